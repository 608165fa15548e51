import unittest
from datetime import datetime, timedelta, timezone

from clinicsync.classifier import (
    Category,
    TreatmentStage,
    classification_options,
    classify,
    extract_amounts,
    fill_missing,
    fold_text,
    is_ignored,
    normalize_category,
    parse_amount,
)
from clinicsync.models import DerivedFields, RawEvent


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _event(summary: str, description: str = "", start: datetime | None = None) -> RawEvent:
    return RawEvent(
        calendar_id="cal-1",
        event_id="evt-1",
        summary=summary,
        description=description,
        start=start or datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc),
    )


class ParseAmountTests(unittest.TestCase):
    def test_strips_currency_formatting(self) -> None:
        self.assertEqual(parse_amount("$50.000"), 50000)
        self.assertEqual(parse_amount("40,000 CLP"), 40000)

    def test_empty_or_unparseable_is_unknown_not_zero(self) -> None:
        self.assertIsNone(parse_amount(""))
        self.assertIsNone(parse_amount("   "))
        self.assertIsNone(parse_amount("abc"))
        self.assertIsNone(parse_amount(None))

    def test_explicit_zero_is_zero(self) -> None:
        self.assertEqual(parse_amount("0"), 0)
        self.assertEqual(parse_amount(0), 0)


class ExtractAmountsTests(unittest.TestCase):
    def test_slash_means_paid_over_expected(self) -> None:
        self.assertEqual(extract_amounts("clustoid (20/40)"), (40000, 20000))

    def test_mil_suffix(self) -> None:
        self.assertEqual(extract_amounts("consulta (35 mil)"), (35000, None))

    def test_phone_numbers_are_not_amounts(self) -> None:
        self.assertEqual(extract_amounts("(912345678)"), (None, None))

    def test_sin_costo(self) -> None:
        self.assertEqual(extract_amounts("control s/c"), (0, 0))


class ClassifyTests(unittest.TestCase):
    def test_consultation_with_amount(self) -> None:
        derived = classify(_event("Consulta Juan Pérez (40)"), now=NOW)
        self.assertEqual(derived.category, Category.CONSULTATION.value)
        self.assertEqual(derived.amount_expected, 40000)
        self.assertIsNone(derived.amount_paid)
        self.assertIsNone(derived.attended)
        self.assertIsNone(derived.treatment_stage)
        self.assertFalse(derived.control_included)

    def test_subcutaneous_maintenance_with_dosage(self) -> None:
        derived = classify(_event("Clustoid 0,5 ml mantención (50)"), now=NOW)
        self.assertEqual(derived.category, Category.SUBCUTANEOUS.value)
        self.assertEqual(derived.treatment_stage, TreatmentStage.MAINTENANCE.value)
        self.assertEqual(derived.dosage_value, 0.5)
        self.assertEqual(derived.dosage_unit, "ml")
        self.assertEqual(derived.amount_expected, 50000)

    def test_induction_dose_number(self) -> None:
        derived = classify(_event("Clustoid 2da dosis 0,2 ml"), now=NOW)
        self.assertEqual(derived.category, Category.SUBCUTANEOUS.value)
        self.assertEqual(derived.treatment_stage, TreatmentStage.INDUCTION.value)
        self.assertEqual(derived.dosage_value, 0.2)
        self.assertIsNone(derived.amount_expected)

    def test_stage_falls_back_to_dosage(self) -> None:
        derived = classify(_event("Vacuna ácaros 0,3ml"), now=NOW)
        self.assertEqual(derived.category, Category.SUBCUTANEOUS.value)
        self.assertEqual(derived.treatment_stage, TreatmentStage.INDUCTION.value)

    def test_no_show_forces_attended_false_and_paid_zero(self) -> None:
        derived = classify(_event("Consulta (40)", "no asiste"), now=NOW)
        self.assertIs(derived.attended, False)
        self.assertEqual(derived.amount_paid, 0)

    def test_no_show_without_amount_leaves_paid_unknown(self) -> None:
        derived = classify(_event("Consulta Ana", "no vino"), now=NOW)
        self.assertIs(derived.attended, False)
        self.assertIsNone(derived.amount_paid)

    def test_no_show_beats_existing_attended(self) -> None:
        existing = DerivedFields(category=Category.CONSULTATION.value, attended=True)
        derived = classify(_event("Consulta Ana", "no asistió"), existing, now=NOW)
        self.assertIs(derived.attended, False)

    def test_arrival_only_counts_once_started(self) -> None:
        past = classify(_event("Consulta (40) llegó"), now=NOW)
        self.assertIs(past.attended, True)
        self.assertEqual(past.amount_paid, 40000)

        future = classify(_event("Consulta (40) llegó", start=NOW + timedelta(days=2)), now=NOW)
        self.assertIsNone(future.attended)

    def test_ignored_entries_keep_existing_category(self) -> None:
        self.assertTrue(is_ignored("Feriado"))
        self.assertIsNone(classify(_event("Reunión equipo"), now=NOW).category)
        existing = DerivedFields(category=Category.CONSULTATION.value)
        self.assertEqual(classify(_event("Feriado"), existing, now=NOW).category, Category.CONSULTATION.value)

    def test_tests_take_priority_over_control(self) -> None:
        derived = classify(_event("Test de parche control"), now=NOW)
        self.assertEqual(derived.category, Category.TESTS.value)
        self.assertTrue(derived.control_included)

    def test_injection_service(self) -> None:
        self.assertEqual(classify(_event("Dupixent"), now=NOW).category, Category.INJECTION.value)

    def test_subcutaneous_word_is_not_a_skin_test(self) -> None:
        derived = classify(_event("Tratamiento subcutáneo"), now=NOW)
        self.assertEqual(derived.category, Category.SUBCUTANEOUS.value)

    def test_roxair_defaults(self) -> None:
        pickup = classify(_event("Retira Roxair"), now=NOW)
        self.assertEqual(pickup.category, Category.ROXAIR.value)
        self.assertEqual(pickup.amount_expected, 150000)
        self.assertIsNone(pickup.amount_paid)

        ready = classify(_event("Roxair listo"), now=NOW)
        self.assertIs(ready.attended, True)
        self.assertEqual(ready.amount_paid, 150000)

    def test_subcutaneous_fields_cleared_for_other_categories(self) -> None:
        existing = DerivedFields(
            category=Category.SUBCUTANEOUS.value,
            treatment_stage=TreatmentStage.MAINTENANCE.value,
            dosage_value=0.5,
            dosage_unit="ml",
        )
        derived = classify(_event("Consulta"), existing, now=NOW)
        self.assertEqual(derived.category, Category.CONSULTATION.value)
        self.assertIsNone(derived.treatment_stage)
        self.assertIsNone(derived.dosage_value)
        self.assertIsNone(derived.dosage_unit)

    def test_home_visit_marks_paid(self) -> None:
        derived = classify(_event("Clustoid (40) domicilio"), now=NOW)
        self.assertTrue(derived.is_home_visit)
        self.assertEqual(derived.amount_paid, 40000)

    def test_pending_confirmation_leaves_paid_unknown(self) -> None:
        derived = classify(_event("Consulta confirma (30 pagado)"), now=NOW)
        self.assertEqual(derived.amount_expected, 30000)
        self.assertIsNone(derived.amount_paid)

    def test_unmatched_text_keeps_existing_values(self) -> None:
        existing = DerivedFields(category=Category.CONTROL.value, amount_expected=25000, attended=True)
        derived = classify(_event("Juan"), existing, now=NOW)
        self.assertEqual(derived.category, Category.CONTROL.value)
        self.assertEqual(derived.amount_expected, 25000)
        self.assertIs(derived.attended, True)

    def test_classification_reaches_fixed_point(self) -> None:
        samples = [
            _event("Consulta Juan Pérez (40)"),
            _event("Clustoid 0,5 ml mantención (50)"),
            _event("Clustoid 2da dosis 0,2 ml"),
            _event("Consulta (40)", "no asiste"),
            _event("Roxair listo"),
            _event("Control s/c"),
            _event("Clustoid (20/40) llegó"),
            _event("Feriado"),
        ]
        for event in samples:
            first = classify(event, None, now=NOW)
            self.assertEqual(classify(event, first, now=NOW), first, event.summary)


class FillMissingTests(unittest.TestCase):
    def test_only_fills_gaps(self) -> None:
        current = DerivedFields(category=Category.CONTROL.value)
        computed = DerivedFields(category=Category.CONSULTATION.value, amount_expected=40000, attended=True)
        merged = fill_missing(current, computed)
        self.assertEqual(merged.category, Category.CONTROL.value)
        self.assertEqual(merged.amount_expected, 40000)
        self.assertIs(merged.attended, True)

    def test_no_show_overrides_stored_attendance(self) -> None:
        current = DerivedFields(category=Category.CONTROL.value, attended=True)
        merged = fill_missing(current, DerivedFields(attended=False))
        self.assertIs(merged.attended, False)


class TaxonomyTests(unittest.TestCase):
    def test_normalize_category_ignores_case_and_accents(self) -> None:
        self.assertEqual(normalize_category("consulta medica"), Category.CONSULTATION)
        self.assertEqual(normalize_category("TRATAMIENTO SUBCUTANEO"), Category.SUBCUTANEOUS)
        self.assertIsNone(normalize_category("otra cosa"))
        self.assertIsNone(normalize_category(""))

    def test_fold_text(self) -> None:
        self.assertEqual(fold_text("Mantención LLEGÓ"), "mantencion llego")

    def test_classification_options(self) -> None:
        options = classification_options()
        self.assertEqual(len(options["categories"]), 7)
        self.assertIn("Inducción", options["treatmentStages"])
