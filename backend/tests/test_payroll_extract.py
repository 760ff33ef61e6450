"""Tests for the AI extraction layer.

Covers:
- Common layer: json_tools, provider factory, router
- payroll_extract: response validation/mapping, timeouts, upstream errors, OCR fallback
"""

import asyncio
import json
import os
import unittest
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

import httpx

from app.core.config import get_settings
from app.schemas.payroll import AportesListing, DocumentClass, MultiTransferReceipt, TransferReceipt
from app.services.ai.common.json_tools import extract_json, extract_json_object, strip_code_fences
from app.services.ai.common.providers import DocumentInput, MockProvider, get_provider
from app.services.ai.common.router import SCOPE_PAYROLL_EXTRACT, resolve
from app.services.ai.payroll_extract.service import (
    ARGENTINA_TZ,
    ExtractionOptions,
    fingerprint,
    guess_document_class,
    guess_media_type,
    parse_transfer_timestamp,
    to_extraction_result,
)
from app.services.errors import ExtractionFailure, ExtractionFailureReason
from payroll_samples import (
    FailingProvider,
    FakeOcr,
    SlowProvider,
    listing_payload,
    make_extractor,
    multi_transfer_payload,
    transfer_payload,
)

PDF_BYTES = b"%PDF-1.4 listado de aportes"


class JsonToolsTests(unittest.TestCase):
    def test_numbers_come_back_as_decimal(self):
        result = extract_json('{"monto": 22852.54, "cantidad": 2}')
        self.assertEqual(result["monto"], Decimal("22852.54"))
        self.assertEqual(result["cantidad"], 2)

    def test_code_fence_is_stripped(self):
        text = '```json\n{"tipo": "TRANSFERENCIA"}\n```'
        self.assertEqual(strip_code_fences(text), '{"tipo": "TRANSFERENCIA"}')
        self.assertEqual(extract_json(text), {"tipo": "TRANSFERENCIA"})

    def test_prefixed_object(self):
        result = extract_json('Aquí está: {"a": {"b": 1}} fin')
        self.assertEqual(result, {"a": {"b": 1}})

    def test_object_only(self):
        self.assertIsNone(extract_json_object("[1, 2]"))
        self.assertIsNone(extract_json_object("sin json"))
        self.assertEqual(extract_json_object('{"x": "y"}'), {"x": "y"})

    def test_invalid_json_returns_none(self):
        self.assertIsNone(extract_json("{invalid json}"))
        self.assertIsNone(extract_json("   "))


class ProviderFactoryTests(unittest.TestCase):
    def tearDown(self):
        get_settings.cache_clear()

    def test_missing_key_falls_back_to_mock(self):
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "", "AI_ALLOWED_PROVIDERS": "mock,claude"}):
            get_settings.cache_clear()
            self.assertIsInstance(get_provider("claude"), MockProvider)

    def test_not_allowlisted_falls_back_to_mock(self):
        with patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test", "AI_ALLOWED_PROVIDERS": "mock"}):
            get_settings.cache_clear()
            self.assertIsInstance(get_provider("openai"), MockProvider)

    def test_claude_with_key(self):
        from app.services.ai.common.providers.claude import ClaudeProvider

        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "sk-ant-test", "AI_ALLOWED_PROVIDERS": "mock,claude"}):
            get_settings.cache_clear()
            self.assertIsInstance(get_provider("claude"), ClaudeProvider)

    def test_claude_sends_pdf_as_document_block(self):
        from app.services.ai.common.providers.claude import ClaudeProvider

        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["key"] = request.headers["x-api-key"]
            return httpx.Response(200, json={"content": [{"type": "text", "text": '{"ok": true}'}], "usage": {}})

        real_client = httpx.AsyncClient

        def client_factory(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        provider = ClaudeProvider(api_key="sk-ant-test")
        document = DocumentInput(content=PDF_BYTES, filename="a.pdf")
        with patch("httpx.AsyncClient", side_effect=client_factory):
            result = asyncio.run(provider.generate("leer", document=document, system_prompt="sistema"))

        self.assertEqual(result.raw_text, '{"ok": true}')
        self.assertEqual(seen["key"], "sk-ant-test")
        self.assertEqual(seen["body"]["system"], "sistema")
        blocks = seen["body"]["messages"][0]["content"]
        self.assertEqual(blocks[0]["type"], "document")
        self.assertEqual(blocks[0]["source"]["data"], document.as_base64())
        self.assertEqual(blocks[1], {"type": "text", "text": "leer"})

    def test_document_input_helpers(self):
        image = DocumentInput(content=b"\x89PNG", media_type="image/png", filename="a.png")
        self.assertFalse(image.is_pdf)
        self.assertTrue(image.as_data_uri().startswith("data:image/png;base64,"))


class RouterTests(unittest.TestCase):
    def tearDown(self):
        get_settings.cache_clear()

    def test_env_provider_and_model(self):
        env = {"AI_EXTRACT_PROVIDER": "mock", "AI_EXTRACT_MODEL": "mock-v2", "AI_ALLOWED_MODELS": ""}
        with patch.dict(os.environ, env):
            get_settings.cache_clear()
            config = resolve(SCOPE_PAYROLL_EXTRACT)
        self.assertIsInstance(config.provider, MockProvider)
        self.assertEqual(config.model, "mock-v2")

    def test_overrides_ignored_unless_enabled(self):
        with patch.dict(os.environ, {"AI_EXTRACT_MODEL": "", "ENABLE_AI_OVERRIDES": "false"}):
            get_settings.cache_clear()
            config = resolve(SCOPE_PAYROLL_EXTRACT, override_model="other")
        self.assertEqual(config.model, "")

    def test_model_outside_allowlist_uses_first_allowed(self):
        env = {
            "AI_EXTRACT_PROVIDER": "mock",
            "AI_EXTRACT_MODEL": "rogue",
            "AI_ALLOWED_MODELS": json.dumps({"mock": ["mock-a", "mock-b"]}),
        }
        with patch.dict(os.environ, env):
            get_settings.cache_clear()
            config = resolve(SCOPE_PAYROLL_EXTRACT)
        self.assertEqual(config.model, "mock-a")


class HelperTests(unittest.TestCase):
    def test_fingerprint_ignores_filename(self):
        self.assertEqual(fingerprint(b"abc"), fingerprint(b"abc"))
        self.assertNotEqual(fingerprint(b"abc"), fingerprint(b"abd"))
        self.assertEqual(len(fingerprint(b"")), 64)

    def test_guess_document_class(self):
        self.assertEqual(guess_document_class("Comprobante Transferencia.pdf"), DocumentClass.TRANSFERENCIA)
        self.assertEqual(guess_document_class("listado_aportes_nov.pdf"), DocumentClass.APORTES)
        self.assertEqual(guess_document_class("scan001.pdf"), DocumentClass.APORTES)
        self.assertEqual(guess_document_class("scan001.pdf", "transferencia"), DocumentClass.TRANSFERENCIA)

    def test_guess_media_type(self):
        self.assertEqual(guess_media_type("x.bin", b"%PDF-1.7"), "application/pdf")
        self.assertEqual(guess_media_type("x", b"\x89PNG\r\n"), "image/png")
        self.assertEqual(guess_media_type("foto.jpg", b"????"), "image/jpeg")
        self.assertEqual(guess_media_type("aportes.CSV", b"cuil_cuit;nombre"), "text/csv")
        self.assertEqual(
            guess_media_type("aportes.xlsx", b"PK\x03\x04"),
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )

    def test_transfer_timestamp(self):
        self.assertEqual(
            parse_transfer_timestamp("15/11/2024", "10:35 PM"),
            datetime(2024, 11, 15, 22, 35, tzinfo=ARGENTINA_TZ),
        )
        self.assertEqual(
            parse_transfer_timestamp("15/11/2024", "12:05 a.m."),
            datetime(2024, 11, 15, 0, 5, tzinfo=ARGENTINA_TZ),
        )
        self.assertEqual(
            parse_transfer_timestamp("01-02-2024", None),
            datetime(2024, 2, 1, tzinfo=ARGENTINA_TZ),
        )
        self.assertIsNone(parse_transfer_timestamp("31/02/2024", "10:00"))
        self.assertIsNone(parse_transfer_timestamp("ayer", "10:00"))
        self.assertIsNone(parse_transfer_timestamp(None, "10:00"))


class ResponseMappingTests(unittest.TestCase):
    def test_listing(self):
        result = to_extraction_result(listing_payload())

        self.assertIsInstance(result, AportesListing)
        self.assertEqual(result.entity.tax_id, "30712345678")
        self.assertEqual(result.period, "2024-11")
        self.assertEqual(len(result.entries), 2)
        self.assertEqual(result.entries[0].tax_id, "20123456789")
        self.assertEqual(result.entries[0].concept_amount, Decimal("22852.54"))
        self.assertEqual(result.entries[0].total_remunerative, Decimal("2285254.37"))
        self.assertEqual(result.totals.total_amount, Decimal("32852.54"))
        self.assertEqual(result.totals.person_count, 2)

    def test_listing_in_code_fence(self):
        result = to_extraction_result(f"```json\n{listing_payload()}\n```")
        self.assertIsInstance(result, AportesListing)

    def test_missing_amount_is_malformed(self):
        payload = json.loads(listing_payload())
        del payload["personas"][0]["montoConcepto"]
        with self.assertRaises(ExtractionFailure) as ctx:
            to_extraction_result(json.dumps(payload))
        self.assertEqual(ctx.exception.reason, ExtractionFailureReason.MALFORMED_RESPONSE)

    def test_unreadable_amount_is_malformed(self):
        payload = json.loads(listing_payload())
        payload["totales"]["montoTotal"] = "mucho"
        with self.assertRaises(ExtractionFailure):
            to_extraction_result(json.dumps(payload))

    def test_unknown_shape_is_malformed(self):
        for text in ['{"tipo": "MOCK"}', "no es json", '["LISTADO_APORTES"]']:
            with self.subTest(text=text):
                with self.assertRaises(ExtractionFailure) as ctx:
                    to_extraction_result(text)
                self.assertEqual(ctx.exception.reason, ExtractionFailureReason.MALFORMED_RESPONSE)

    def test_transfer(self):
        result = to_extraction_result(transfer_payload())

        self.assertIsInstance(result, TransferReceipt)
        self.assertEqual(result.transfer.amount, Decimal("32852.54"))
        self.assertEqual(result.transfer.operation_number, "884512")
        self.assertEqual(result.transfer.timestamp, datetime(2024, 11, 15, 10, 35, tzinfo=ARGENTINA_TZ))
        self.assertEqual(result.payer.tax_id, "30712345678")
        self.assertEqual(result.beneficiary.tax_id, "30500000001")

    def test_transfer_amount_falls_back_to_amount_to_transfer(self):
        payload = json.loads(transfer_payload())
        payload["operacion"]["importe"] = None
        payload["operacion"]["importeATransferir"] = "500.00"
        result = to_extraction_result(json.dumps(payload))
        self.assertEqual(result.transfer.amount, Decimal("500.00"))

    def test_multi_transfer(self):
        result = to_extraction_result(multi_transfer_payload())

        self.assertIsInstance(result, MultiTransferReceipt)
        self.assertEqual(len(result.transfers), 2)
        self.assertEqual(result.declared_total, Decimal("3000.00"))
        self.assertEqual(result.transfers[1].transfer.operation_number, "OP2")


class DocumentExtractorTests(unittest.TestCase):
    def test_extracts_listing_with_document_attached(self):
        extractor, provider = make_extractor(responses=listing_payload())

        result = asyncio.run(extractor.extract(PDF_BYTES, "listado.pdf"))

        self.assertIsInstance(result, AportesListing)
        self.assertEqual(len(provider.calls), 1)
        self.assertTrue(provider.calls[0]["has_document"])
        self.assertEqual(provider.calls[0]["model"], "test-model")

    def test_default_mock_response_is_rejected(self):
        extractor, _ = make_extractor()
        with self.assertRaises(ExtractionFailure) as ctx:
            asyncio.run(extractor.extract(PDF_BYTES, "listado.pdf"))
        self.assertEqual(ctx.exception.reason, ExtractionFailureReason.MALFORMED_RESPONSE)

    def test_timeout(self):
        extractor, _ = make_extractor(SlowProvider(delay=2.0), timeout_seconds=0.05)
        with self.assertRaises(ExtractionFailure) as ctx:
            asyncio.run(extractor.extract(PDF_BYTES, "listado.pdf"))
        self.assertEqual(ctx.exception.reason, ExtractionFailureReason.TIMEOUT)

    def test_option_timeout_wins(self):
        extractor, _ = make_extractor(SlowProvider(delay=2.0), timeout_seconds=30)
        with self.assertRaises(ExtractionFailure) as ctx:
            asyncio.run(extractor.extract(PDF_BYTES, "listado.pdf", ExtractionOptions(timeout_seconds=0.05)))
        self.assertEqual(ctx.exception.reason, ExtractionFailureReason.TIMEOUT)

    def test_upstream_error(self):
        extractor, _ = make_extractor(FailingProvider())
        with self.assertRaises(ExtractionFailure) as ctx:
            asyncio.run(extractor.extract(PDF_BYTES, "listado.pdf"))
        self.assertEqual(ctx.exception.reason, ExtractionFailureReason.UPSTREAM_ERROR)
        self.assertIsInstance(ctx.exception.__cause__, ConnectionError)

    def test_ocr_fallback_retries_with_text(self):
        ocr = FakeOcr("CUIT 30-71234567-8 LISTADO")
        extractor, provider = make_extractor(responses=["ilegible", listing_payload()], ocr=ocr)

        result = asyncio.run(extractor.extract(PDF_BYTES, "listado.pdf", ExtractionOptions(allow_ocr=True)))

        self.assertIsInstance(result, AportesListing)
        self.assertEqual(ocr.calls, 1)
        self.assertEqual(len(provider.calls), 2)
        self.assertFalse(provider.calls[1]["has_document"])
        self.assertIn("CUIT 30-71234567-8 LISTADO", provider.calls[1]["prompt"])

    def test_ocr_not_used_unless_allowed(self):
        ocr = FakeOcr()
        extractor, _ = make_extractor(responses=["ilegible", listing_payload()], ocr=ocr)
        with self.assertRaises(ExtractionFailure):
            asyncio.run(extractor.extract(PDF_BYTES, "listado.pdf"))
        self.assertEqual(ocr.calls, 0)

    def test_ocr_without_text_keeps_original_failure(self):
        extractor, provider = make_extractor(responses="ilegible", ocr=FakeOcr(text=None))
        with self.assertRaises(ExtractionFailure) as ctx:
            asyncio.run(extractor.extract(PDF_BYTES, "listado.pdf", ExtractionOptions(allow_ocr=True)))
        self.assertEqual(ctx.exception.reason, ExtractionFailureReason.MALFORMED_RESPONSE)
        self.assertEqual(len(provider.calls), 1)

    def test_slow_ocr_is_bounded_by_the_extraction_timeout(self):
        ocr = FakeOcr("CUIT 30-71234567-8 LISTADO", delay=1.0)
        extractor, provider = make_extractor(responses=["ilegible", listing_payload()], ocr=ocr, timeout_seconds=0.1)

        async def run():
            loop = asyncio.get_running_loop()
            started = loop.time()
            try:
                await extractor.extract(PDF_BYTES, "listado.pdf", ExtractionOptions(allow_ocr=True))
            except ExtractionFailure as failure:
                return failure, loop.time() - started
            return None, loop.time() - started

        failure, elapsed = asyncio.run(run())

        self.assertIsNotNone(failure)
        self.assertEqual(failure.reason, ExtractionFailureReason.TIMEOUT)
        self.assertLess(elapsed, 0.5)
        self.assertEqual(ocr.calls, 1)
        # The text retry never started.
        self.assertEqual(len(provider.calls), 1)
