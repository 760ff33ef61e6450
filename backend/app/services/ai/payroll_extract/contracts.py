"""Raw response contracts for payroll document extraction.

These mirror the JSON the model is instructed to return (Spanish keys, as in the
documents themselves).  They are validated first and only then mapped into the
canonical ``app.schemas.payroll`` types.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

RawAmount = Optional[Union[Decimal, int, str]]
RawText = Optional[Union[str, int]]


class _Raw(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RawEscuela(_Raw):
    nombre: RawText = None
    direccion: RawText = None
    cuit: RawText = None


class RawPersona(_Raw):
    nombre: str = Field(..., min_length=1)
    cuilCuit: RawText = None
    totalRemunerativo: Union[Decimal, int, str]
    cantidadLegajos: Optional[Union[int, str]] = 0
    montoConcepto: Union[Decimal, int, str]


class RawTotales(_Raw):
    cantidadPersonas: Optional[int] = None
    montoTotal: Union[Decimal, int, str]


class RawListado(_Raw):
    tipo: Literal["LISTADO_APORTES"]
    escuela: RawEscuela = Field(default_factory=RawEscuela)
    fecha: RawText = None
    periodo: RawText = None
    concepto: RawText = None
    personas: list[RawPersona]
    totales: RawTotales


class RawOrdenante(_Raw):
    cuit: RawText = None
    nombre: RawText = None
    domicilio: RawText = None
    ingresosBrutos: RawText = None


class RawOperacion(_Raw):
    cuentaOrigen: RawText = None
    importe: RawAmount = None
    cbuDestino: RawText = None
    banco: RawText = None
    titular: RawText = None
    cuit: RawText = None
    condicionIva: RawText = None
    domicilioBeneficiario: RawText = None
    tipoOperacion: RawText = None
    importeATransferir: RawAmount = None
    importeTotal: RawAmount = None


class RawTransferenciaItem(_Raw):
    nroReferencia: RawText = None
    nroOperacion: RawText = None
    fecha: RawText = None
    hora: RawText = None
    ordenante: RawOrdenante = Field(default_factory=RawOrdenante)
    operacion: RawOperacion


class RawTransferencia(RawTransferenciaItem):
    tipo: Literal["TRANSFERENCIA"]


class RawResumen(_Raw):
    cantidadTransferencias: Optional[int] = None
    importeTotal: RawAmount = None


class RawTransferenciasMultiples(_Raw):
    tipo: Literal["TRANSFERENCIAS_MULTIPLES"]
    transferencias: list[RawTransferenciaItem] = Field(..., min_length=1)
    resumen: Optional[RawResumen] = None
