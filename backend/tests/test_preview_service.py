"""Tests for app.services.preview_service: reconciliation rules and batch previews."""

import asyncio
import json
import unittest
from decimal import Decimal

from app.models.payroll import PayrollPeriod, PdfFile
from app.schemas.payroll import (
    DiscrepancyKind,
    DocumentClass,
    DocumentKind,
    MultiTransferReceipt,
    Severity,
    TransferDetails,
    TransferItem,
    TransferReceipt,
)
from app.services.ai.payroll_extract.service import fingerprint, to_extraction_result
from app.services.errors import ExtractionFailure, ExtractionFailureReason
from app.services.preview_service import (
    ReconcileOptions,
    UploadedFile,
    batch_totals,
    build_batch_preview,
    cross_validate,
    detect_document_kind,
    parse_period,
    reconcile_listing,
    validate_transfer,
)
from app.services.preview_store import PreviewStore
from payroll_samples import (
    FailingProvider,
    RoutingProvider,
    SlowProvider,
    add_institution,
    listing_payload,
    make_database,
    make_extractor,
    make_listing,
    multi_transfer_payload,
    transfer_payload,
)

EXACT = ReconcileOptions(tolerance_abs=Decimal("0.01"), tolerance_pct=Decimal("0"))


def _kinds(discrepancies):
    return [d.kind for d in discrepancies]


def _transfer(**overrides):
    details = {
        "amount": Decimal("5000.00"),
        "amount_to_transfer": Decimal("5000.00"),
        "operation_number": "884512",
        "account_id": "0110599520000001234567",
    }
    details.update(overrides)
    return TransferReceipt(transfer=TransferDetails(**details))


class PeriodTests(unittest.TestCase):
    def test_parse(self):
        self.assertEqual(parse_period("2024-11"), (2024, 11))
        self.assertEqual(parse_period(" 2024-01 "), (2024, 1))

    def test_invalid(self):
        for value in ["2024-13", "2024-00", "11/2024", "", "2024-1"]:
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    parse_period(value)


class ListingReconcileTests(unittest.TestCase):
    PEOPLE = [
        ("A", "20123456789", "5001.00", 1, "50.01"),
        ("B", "27111111113", "5001.00", 1, "50.01"),
    ]

    def test_totals_off_by_two_cents_is_one_warning(self):
        listing = make_listing(self.PEOPLE, total="100.00")

        found = reconcile_listing(listing, EXACT)

        self.assertEqual(len(found), 1)
        self.assertEqual(found[0].kind, DiscrepancyKind.TOTALS_MISMATCH)
        self.assertEqual(found[0].severity, Severity.WARNING)
        self.assertEqual(found[0].difference, Decimal("0.02"))
        self.assertIn("0,02", found[0].message)

    def test_default_tolerance_scales_with_entries(self):
        listing = make_listing(self.PEOPLE, total="100.00")
        self.assertEqual(reconcile_listing(listing), [])

    def test_exact_totals(self):
        self.assertEqual(reconcile_listing(make_listing()), [])

    def test_person_count_mismatch(self):
        found = reconcile_listing(make_listing(person_count=3))
        self.assertEqual(_kinds(found), [DiscrepancyKind.PERSON_COUNT_MISMATCH])
        self.assertEqual(found[0].severity, Severity.WARNING)

    def test_empty_listing_is_error(self):
        listing = make_listing(people=[], total="0")
        found = reconcile_listing(listing)
        self.assertEqual(_kinds(found), [DiscrepancyKind.EMPTY_LISTING])
        self.assertEqual(found[0].severity, Severity.ERROR)

    def test_negative_amount_is_error(self):
        listing = make_listing([("A", "20123456789", "5000.00", 1, "-50.00")])
        found = reconcile_listing(listing)
        self.assertIn(DiscrepancyKind.NEGATIVE_AMOUNT, _kinds(found))
        self.assertTrue(all(d.severity == Severity.ERROR for d in found if d.kind == DiscrepancyKind.NEGATIVE_AMOUNT))

    def test_concept_ratio_outside_band(self):
        listing = make_listing([("A", "20123456789", "1000.00", 1, "100.00")])
        found = reconcile_listing(listing)
        self.assertEqual(_kinds(found), [DiscrepancyKind.CONCEPT_RATIO])
        self.assertEqual(found[0].field, "entries[0].concept_amount")


class CrossValidationTests(unittest.TestCase):
    def test_matches_by_identifier_then_name(self):
        extracted = make_listing(
            [
                ("CABRERA SILVIO VICTOR", "20-12345678-9", "2285254.37", 2, "22852.54"),
                ("perez  ana", None, "1000000.00", 1, "10000.00"),
            ]
        )
        tabular = make_listing(
            [
                ("PEREZ ANA", "27-11111111-3", "1000000.00", 1, "10000.00"),
                ("CABRERA S.", "20-12345678-9", "2285254.37", 2, "22852.54"),
            ]
        )
        self.assertEqual(cross_validate(extracted, tabular), [])

    def test_reports_missing_and_mismatched(self):
        extracted = make_listing(
            [
                ("CABRERA SILVIO VICTOR", "20-12345678-9", "2285254.37", 2, "22852.54"),
                ("GOMEZ LUIS", "20-22222222-3", "100000.00", 1, "1000.00"),
            ]
        )
        tabular = make_listing(
            [
                ("CABRERA SILVIO VICTOR", "20-12345678-9", "2285254.37", 2, "22852.00"),
                ("PEREZ ANA", "27-11111111-3", "1000000.00", 1, "10000.00"),
            ]
        )

        found = cross_validate(extracted, tabular)

        self.assertEqual(
            sorted(_kinds(found)),
            sorted(
                [
                    DiscrepancyKind.AMOUNT_MISMATCH,
                    DiscrepancyKind.MISSING_IN_TABULAR,
                    DiscrepancyKind.MISSING_IN_EXTRACTION,
                ]
            ),
        )
        mismatch = next(d for d in found if d.kind == DiscrepancyKind.AMOUNT_MISMATCH)
        self.assertEqual(mismatch.difference, Decimal("0.54"))
        self.assertEqual(mismatch.field, "concept_amount")
        self.assertTrue(all(d.severity == Severity.WARNING for d in found))


class TransferValidationTests(unittest.TestCase):
    def test_valid_transfer(self):
        self.assertEqual(validate_transfer(_transfer()), [])

    def test_missing_amount_is_error(self):
        found = validate_transfer(_transfer(amount=None, amount_to_transfer=None))
        self.assertEqual(_kinds(found), [DiscrepancyKind.MISSING_FIELD])
        self.assertEqual(found[0].severity, Severity.ERROR)

    def test_missing_operation_and_reference_is_error(self):
        found = validate_transfer(_transfer(operation_number=None))
        self.assertEqual(_kinds(found), [DiscrepancyKind.MISSING_FIELD])
        self.assertEqual(found[0].field, "transfer.operation_number")

    def test_reference_is_enough(self):
        self.assertEqual(validate_transfer(_transfer(operation_number=None, reference="R-9")), [])

    def test_missing_cbu_is_warning(self):
        found = validate_transfer(_transfer(account_id=None))
        self.assertEqual(_kinds(found), [DiscrepancyKind.MISSING_FIELD])
        self.assertEqual(found[0].severity, Severity.WARNING)

    def test_amount_range(self):
        low = validate_transfer(_transfer(amount=Decimal("50"), amount_to_transfer=None))
        self.assertEqual([(d.kind, d.severity) for d in low], [(DiscrepancyKind.AMOUNT_OUT_OF_RANGE, Severity.WARNING)])
        zero = validate_transfer(_transfer(amount=Decimal("0"), amount_to_transfer=None))
        self.assertEqual([(d.kind, d.severity) for d in zero], [(DiscrepancyKind.AMOUNT_OUT_OF_RANGE, Severity.ERROR)])

    def test_inconsistent_amounts(self):
        found = validate_transfer(_transfer(amount_to_transfer=Decimal("5100.00")))
        self.assertEqual(_kinds(found), [DiscrepancyKind.TRANSFER_AMOUNTS_INCONSISTENT])
        self.assertEqual(found[0].difference, Decimal("100.00"))

    def test_multi_transfer_declared_total(self):
        result = to_extraction_result(multi_transfer_payload(declared_total="3500.00"))
        found = validate_transfer(result)
        self.assertEqual(_kinds(found), [DiscrepancyKind.TOTALS_MISMATCH])
        self.assertEqual(found[0].difference, Decimal("-500.00"))

    def test_multi_transfer_prefixes_item(self):
        result = MultiTransferReceipt(
            transfers=[
                TransferItem(transfer=TransferDetails(amount=Decimal("1000"), operation_number="1", account_id="x")),
                TransferItem(transfer=TransferDetails(amount=Decimal("1000"), account_id="x")),
            ]
        )
        found = validate_transfer(result)
        self.assertEqual(len(found), 1)
        self.assertTrue(found[0].message.startswith("Transferencia 2:"))


class ClassificationTests(unittest.TestCase):
    def test_document_kind(self):
        self.assertEqual(detect_document_kind(make_listing()), DocumentKind.SUELDO)
        self.assertEqual(detect_document_kind(make_listing(concept="Aporte FOPID")), DocumentKind.FOPID)
        self.assertEqual(
            detect_document_kind(make_listing().model_copy(update={"period": "fopid"})),
            DocumentKind.FOPID,
        )
        self.assertEqual(detect_document_kind(_transfer()), DocumentKind.COMPROBANTE)


class BatchPreviewTests(unittest.TestCase):
    def setUp(self):
        self.database = make_database()
        self.db = self.database.session()
        self.institution = add_institution(self.db)
        self.store = PreviewStore(ttl_seconds=60)

    def tearDown(self):
        self.db.close()
        self.database.dispose()

    def _preview(self, uploads, extractor, **kwargs):
        return asyncio.run(
            build_batch_preview(self.db, uploads, period="2024-11", extractor=extractor, store=self.store, **kwargs)
        )

    def test_one_timeout_in_three_files(self):
        provider = RoutingProvider(
            {
                "listado_a.pdf": listing_payload(),
                "listado_b.pdf": SlowProvider(delay=2.0),
                "comprobante.pdf": transfer_payload(),
            }
        )
        extractor, _ = make_extractor(provider, timeout_seconds=0.1)
        uploads = [
            UploadedFile("listado_a.pdf", b"%PDF-a"),
            UploadedFile("listado_b.pdf", b"%PDF-b"),
            UploadedFile("comprobante.pdf", b"%PDF-c"),
        ]

        result = self._preview(uploads, extractor)

        self.assertEqual([p.file_name for p in result.files], ["listado_a.pdf", "comprobante.pdf"])
        self.assertEqual(len(result.failures), 1)
        failure = result.failures[0]
        self.assertEqual(failure.file_name, "listado_b.pdf")
        self.assertEqual(failure.stage, "extraction")
        self.assertEqual(failure.error_kind, ExtractionFailureReason.TIMEOUT)

        session = self.store.get(result.session_token)
        self.assertIsNotNone(session)
        self.assertEqual(
            set(session.documents),
            {fingerprint(b"%PDF-a"), fingerprint(b"%PDF-c")},
        )

        self.assertEqual(result.institution.id, str(self.institution.id))
        self.assertEqual(result.totals.total_listings, Decimal("32852.54"))
        self.assertEqual(result.totals.total_transfers, Decimal("32852.54"))
        self.assertTrue(result.totals.match)
        self.assertTrue(result.confirmable)
        self.assertFalse(result.has_errors)
        self.assertEqual(result.files[1].classification, DocumentClass.TRANSFERENCIA)
        self.assertEqual(result.files[1].kind, DocumentKind.COMPROBANTE)

    def test_all_upstream_failures_abort_batch(self):
        extractor, _ = make_extractor(FailingProvider())
        uploads = [UploadedFile("a.pdf", b"%PDF-a"), UploadedFile("b.pdf", b"%PDF-b")]
        with self.assertRaises(ExtractionFailure) as ctx:
            self._preview(uploads, extractor)
        self.assertEqual(ctx.exception.reason, ExtractionFailureReason.UPSTREAM_ERROR)
        self.assertEqual(len(self.store), 0)

    def test_tabular_companion_is_cross_checked(self):
        extractor, provider = make_extractor(responses=listing_payload())
        csv_text = (
            "cuil_cuit;nombre;tot_remunerativo;cant_legajos;monto_concepto\n"
            "20-12345678-9;CABRERA SILVIO VICTOR;2.285.254,37;2;22.852,54\n"
            "27-11111111-3;PEREZ ANA;1.000.000,00;1;9.999,00\n"
        )
        uploads = [
            UploadedFile("Listado.pdf", b"%PDF-listado"),
            UploadedFile("listado.csv", csv_text.encode("utf-8")),
        ]

        result = self._preview(uploads, extractor)

        self.assertEqual(len(provider.calls), 1)
        self.assertEqual(len(result.files), 1)
        preview = result.files[0]
        self.assertEqual(preview.source, "ai")
        self.assertEqual(preview.cross_checked_with, "listado.csv")
        mismatches = [d for d in preview.discrepancies if d.kind == DiscrepancyKind.AMOUNT_MISMATCH]
        self.assertEqual(len(mismatches), 1)
        self.assertEqual(mismatches[0].difference, Decimal("1.00"))

    def test_standalone_tabular_listing(self):
        extractor, provider = make_extractor()
        csv_text = "cuil_cuit;nombre;tot_remunerativo;cant_legajos;monto_concepto\n20123456789;A;1.000,00;1;10,00\n"

        result = self._preview(
            [UploadedFile("aportes.csv", csv_text.encode("utf-8"))],
            extractor,
            institution_id=str(self.institution.id),
        )

        self.assertEqual(provider.calls, [])
        self.assertEqual(result.files[0].source, "tabular")
        self.assertEqual(result.files[0].total_amount, Decimal("10.00"))
        self.assertTrue(result.confirmable)

    def test_tabular_parse_failure_is_per_file(self):
        extractor, _ = make_extractor(responses=listing_payload())
        uploads = [
            UploadedFile("listado.pdf", b"%PDF-ok"),
            UploadedFile("roto.csv", b"a;b;c\n1;2;3\n"),
        ]

        result = self._preview(uploads, extractor)

        self.assertEqual(len(result.files), 1)
        self.assertEqual(result.failures[0].stage, "parse")
        self.assertEqual(result.failures[0].error_kind, "MISSING_COLUMNS")

    def test_same_bytes_twice_in_batch(self):
        extractor, _ = make_extractor(responses=listing_payload())
        uploads = [UploadedFile("a.pdf", b"%PDF-same"), UploadedFile("copia.pdf", b"%PDF-same")]

        result = self._preview(uploads, extractor)

        self.assertFalse(result.files[0].is_duplicate)
        self.assertTrue(result.files[1].is_duplicate)
        self.assertEqual(result.files[1].duplicate_of, "a.pdf")
        self.assertIn(DiscrepancyKind.DUPLICATE_UPLOAD, _kinds(result.files[1].discrepancies))
        self.assertEqual(result.totals.total_listings, Decimal("32852.54"))

    def test_already_saved_file_is_duplicate(self):
        content = b"%PDF-saved"
        period = PayrollPeriod(institution_id=self.institution.id, year=2024, month=11)
        self.db.add(period)
        self.db.flush()
        self.db.add(
            PdfFile(
                institution_id=self.institution.id,
                period_id=period.id,
                file_name="viejo.pdf",
                kind="SUELDO",
                classification="APORTES",
                storage_path="x/2024-11/y.pdf",
                content_hash=fingerprint(content),
            )
        )
        self.db.commit()
        extractor, _ = make_extractor(responses=listing_payload())

        result = self._preview([UploadedFile("nuevo.pdf", content)], extractor)

        self.assertTrue(result.files[0].is_duplicate)
        self.assertTrue(result.has_errors)
        self.assertFalse(result.confirmable)

    def test_same_bytes_other_period_is_not_duplicate(self):
        content = b"%PDF-saved"
        period = PayrollPeriod(institution_id=self.institution.id, year=2024, month=10)
        self.db.add(period)
        self.db.flush()
        self.db.add(
            PdfFile(
                institution_id=self.institution.id,
                period_id=period.id,
                file_name="viejo.pdf",
                kind="SUELDO",
                classification="APORTES",
                storage_path="x/2024-10/y.pdf",
                content_hash=fingerprint(content),
            )
        )
        self.db.commit()
        extractor, _ = make_extractor(responses=listing_payload())

        result = self._preview([UploadedFile("nuevo.pdf", content)], extractor)

        self.assertFalse(result.files[0].is_duplicate)

    def test_unknown_institution(self):
        extractor, _ = make_extractor(responses=listing_payload(cuit="30-99999999-9"))

        result = self._preview([UploadedFile("listado.pdf", b"%PDF-x")], extractor)

        self.assertIsNone(result.institution)
        self.assertIn(DiscrepancyKind.INSTITUTION_NOT_FOUND, _kinds(result.files[0].discrepancies))
        self.assertIn(DiscrepancyKind.INSTITUTION_NOT_FOUND, _kinds(result.discrepancies))
        self.assertFalse(result.confirmable)

    def test_explicit_institution_not_found(self):
        extractor, _ = make_extractor(responses=listing_payload())
        result = self._preview(
            [UploadedFile("listado.pdf", b"%PDF-x")],
            extractor,
            institution_id="00000000-0000-0000-0000-0000000000aa",
        )
        self.assertIn(DiscrepancyKind.INSTITUTION_NOT_FOUND, _kinds(result.discrepancies))
        self.assertFalse(result.confirmable)

    def test_mixed_institutions(self):
        add_institution(self.db, name="Colegio Belgrano", tax_id="30555555554")
        payload = json.loads(transfer_payload())
        payload["ordenante"]["cuit"] = "30-55555555-4"
        provider = RoutingProvider({"listado.pdf": listing_payload(), "comprobante.pdf": json.dumps(payload)})
        extractor, _ = make_extractor(provider)

        result = self._preview(
            [UploadedFile("listado.pdf", b"%PDF-1"), UploadedFile("comprobante.pdf", b"%PDF-2")],
            extractor,
        )

        self.assertIn(DiscrepancyKind.MIXED_INSTITUTIONS, _kinds(result.discrepancies))
        self.assertIsNone(result.institution)
        self.assertFalse(result.confirmable)

    def test_batch_totals_mismatch_is_warning(self):
        provider = RoutingProvider(
            {"listado.pdf": listing_payload(), "comprobante.pdf": transfer_payload(importe="20000.00")}
        )
        extractor, _ = make_extractor(provider)

        result = self._preview(
            [UploadedFile("listado.pdf", b"%PDF-1"), UploadedFile("comprobante.pdf", b"%PDF-2")],
            extractor,
        )

        self.assertFalse(result.totals.match)
        self.assertEqual(result.totals.difference, Decimal("12852.54"))
        self.assertEqual(_kinds(result.discrepancies), [DiscrepancyKind.BATCH_TOTALS_MISMATCH])
        self.assertTrue(result.confirmable)


class BatchTotalsTests(unittest.TestCase):
    def test_only_listings_is_not_a_mismatch(self):
        totals, found = batch_totals([], ReconcileOptions())
        self.assertTrue(totals.match)
        self.assertEqual(found, [])
