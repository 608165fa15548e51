"""Rule-based classification of calendar events.

Every pattern below runs against *folded* text: lower-cased, with accents
removed (``"Mantención"`` becomes ``"mantencion"``), so the tables only spell
each word once. Rules are evaluated in a fixed priority order:

1. explicit no-show phrases (force ``attended = False``),
2. the category taxonomy, first matching rule wins,
3. defaults, which keep whatever value the event already had.

``classify`` never reads the clock. The one time-dependent heuristic, not
marking a future appointment as attended, uses the ``now`` argument.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from clinicsync.models import DerivedFields, _ensure_tz


class Category(str, Enum):
    SUBCUTANEOUS = "Tratamiento subcutáneo"
    TESTS = "Test y exámenes"
    CONSULTATION = "Consulta médica"
    CONTROL = "Control médico"
    MEDICAL_LEAVE = "Licencia médica"
    ROXAIR = "Roxair"
    INJECTION = "Servicio de inyección"


class TreatmentStage(str, Enum):
    MAINTENANCE = "Mantención"
    INDUCTION = "Inducción"


ROXAIR_DEFAULT_AMOUNT = 150_000
MAX_REASONABLE_AMOUNT = 100_000_000


def fold_text(value: str | None) -> str:
    decomposed = unicodedata.normalize("NFKD", str(value or ""))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern) for pattern in patterns)


def _matches_any(text: str, patterns: Iterable[re.Pattern[str]]) -> bool:
    return any(pattern.search(text) for pattern in patterns)


SUBCUTANEOUS_PATTERNS = _compile(
    r"cl[au]s[i]?t[oau]?id[eo]?",
    r"clutoid",
    r"\bclust",
    r"\bdosis\s+clust",
    r"alxoid",
    r"cluxin",
    r"oral[\s-]?tec",
    r"\bvacc?\b",
    r"\bacaros?\b",
    r"\bvac\.?\s*acaros?\b",
    r"vacuna",
    r"\bsubcutane[oa]",
    r"inmuno",
    r"\d+[ao]?\s*(era|ta|da|ra|va)?\s*dosis",
    r"\bdosis\s+mensual",
    r"v[ie]+n?[ie]?[eo]?r?o?n?\s+a\s+buscar",
    r"\bmantencion\b",
    r"\bse\s+envio\s+dosis\b",
    r"\benviado\b.*\bpagado\b",
    r"\d+([.,]\d+)?\s*(ml|cc|mg)\b",
)

TEST_PATTERNS = _compile(
    r"\bexamen(es)?\b",
    r"test\s*(de\s*)?parche",
    r"lectura\s*(de\s*)?parche",
    r"\d+(era|da|ra)?\s*test",
    r"llego\s*test",
    r"\d+(era|da|ra)?\s*lectura",
    r"\btest\b",
    r"(?<!sub)cutaneo",
    r"ambiental",
    r"panel",
    r"multi\s*tes?t?",
    r"prick",
    r"aeroalergenos?",
)

MEDICAL_LEAVE_PATTERNS = _compile(r"\blic\b", r"\blicencia\b")

CONTROL_PATTERNS = _compile(
    r"\bcontrol\b",
    r"\d+-\d+control",
    r"\d{3,4}control",
    r"\d{1,2}:\d{2}control",
    r"confirma\s*control",
    r"\bontrol\b",
)

CONSULTATION_PATTERNS = _compile(
    r"\bconsulta\b",
    r"\bconsuta\b",
    r"\bconsult\b",
    r"\bconsulto\b",
    r"\d+(era|da|ra)?\s*consulta",
    r"\d+(era|da|ra)?\s*consuta",
    r"\d+(era|da|ra)?\s*consult\b",
    r"\d+(era|da|ra)?\s*consulto",
    r"^\d{1,2}:\d{2}\s+[a-z]+\s+[a-z]+",
    r"\btelemedicina\b",
    r"\bdoctoralia\b",
    r"\d+(era|da|ra)?\s*confirma\b",
    r"^\d{1,2}:\d{2}\s*\d+(era|da|ra)?\b",
    r"\breserva\s+[a-z]+",
    r"\breservado\s+\+?56",
    r"\breservado\s+9\d{8}",
    r"\bno\s+contesta\s+reserva\b",
    r"\bretirar\s+documentos\b",
    r"^[a-z]+\s+[a-z]+\s+9\d{8}$",
    r"^[a-z]+\s+[a-z]+\s+[a-z]+\s+9\d{8}$",
)

ROXAIR_PATTERNS = _compile(r"\broxair\b", r"\bretira\s+roxair\b", r"\benviar\s+roxair\b")

INJECTION_PATTERNS = _compile(
    r"\bdupixent\b",
    r"\bdacam\b",
    r"\bcidoten\b",
    r"\bbetametasona\b",
    r"\bneurobionta\b",
    r"\blo\s+trae\b",
    r"\btrae\s+(?:su|el)\s+medicamento\b",
    r"\btrae\s+medicamento\b",
    r"\bpaciente\s+trae\b",
    r"\binyeccion\b",
    r"\badministracion\b",
    r"\bim\b",
)

# Administrative entries that never carry a billable category.
IGNORE_PATTERNS = _compile(
    r"^recordar\b",
    r"^semana\s+de\s+vacaciones$",
    r"\brecordar\b.*\bdoctor\b",
    r"\bferiado\b",
    r"^vacaciones$",
    r"^elecciones$",
    r"^doctor\s+ocupado$",
    r"\bpublicidad\b",
    r"\bgrabacion\s+de\s+videos?\b",
    r"^reunion\b",
    r"^jornada\s+de\s+invierno\b",
    r"^reservado$",
    r"\band\b.*\b[a-z]+$",
)

ATTENDED_PATTERNS = _compile(r"\bllego\b", r"\basistio\b")
NOT_ATTENDED_PATTERNS = _compile(
    r"\bno\s+viene\b",
    r"\bno\s+vino\b",
    r"\bno\s+asiste\b",
    r"\bno\s+asistio\b",
    r"\bno\s+podra\s+asistir\b",
    r"\bno\s+podra\s+venir\b",
)
PENDING_CONFIRMATION_PATTERNS = _compile(r"\bconfirma\b", r"\bconfirmado\b", r"\bconfirmada\b")
MONEY_CONFIRMED_PATTERNS = _compile(r"\bllego\b", r"\benvio\b", r"\btransferencia\b", r"\bpagado\b")
HOME_VISIT_PATTERNS = _compile(r"\bdomicilio\b", r"\bse\s+la\s+llevo\b", r"\bse\s+lo\s+llevo\b")

INDUCTION_PATTERNS = _compile(
    r"\b1[o°]?(?:era|ra|er)?\s*dosis\b",
    r"\bprim(?:er)?a?\s*dosis\b",
    r"\bpr[im]+[er]*a\s*dosis\b",
    r"\b[2-5][o°]?(?:da|ra|ta|va|a)?\s*dosis\b",
    r"(?:segunda|tercera|cuarta|quinta)\s*dosis\b",
)
MAINTENANCE_PATTERNS = _compile(
    r"\bmantencion\b",
    r"\bmantencio\b",
    r"\bmant\b",
    r"\bmensual\b",
    r"\(\s*50\s*\)",
    r"\b50\s*(?:$|\))",
    r"\brefuerzo\b",
)
HALF_ML_PATTERN = re.compile(r"0[.,]5(\s*ml)?\b")

DOSAGE_PATTERNS = _compile(
    r"(\d+(?:[.,]\d+)?)\s*(ml)\b",
    r"(\d+(?:[.,]\d+)?)\s*(cc)\b",
    r"(\d+(?:[.,]\d+)?)\s*(mg)\b",
)
CLUSTOID_DOSAGE_PATTERN = re.compile(r"clust(?:oid)?\s*(0[.,]\d+)")
DECIMAL_STANDALONE_PATTERN = re.compile(r"\b(0[.,]\d+)\b")
DECIMAL_DOSAGE_PATTERN = re.compile(r"\b(\d+[.,]\d{1,2})\b")

SIN_COSTO_PATTERN = re.compile(r"\bs/?c\b|sincosto|sin\s*costo")
READY_PATTERN = re.compile(r"\blisto\b")
PHONE_PATTERNS = _compile(r"^9\d{8}$", r"^569\d{8}$", r"^56\d{9}$")
MIL_PATTERN = re.compile(r"(\d+)\s*mil(?:es)?\b")
SLASH_AMOUNT_PATTERN = re.compile(r"\((\d+)\s*/\s*(\d+)\)")
SLASH_FORMAT_PATTERN = re.compile(r"^\d+\s*/\s*\d+$")
PAREN_PATTERN = re.compile(r"\(([^)]*?)(?:\)|$)")
DATE_PATTERN = re.compile(r"\b\d{1,2}-\d{1,2}\b")
AMOUNT_START_PATTERN = re.compile(r"^[\d\s,./]*(?:mil)*\b")
TYPO_AMOUNT_PATTERN = re.compile(r"[a-z](\d+)\)")
ML_MIL_PATTERN = re.compile(r"ml\s*\((\d+\s*mil)")
KEYWORD_AMOUNT_PATTERN = re.compile(
    r"(?:cl[au]s[i]?t[oau]?id[eo]?|cluxin|alxoid|oral[-\s]?tec|vacuna|acaros?)\s+(\d{2,3})\b"
)
CONTEXT_AMOUNT_PATTERN = re.compile(
    r"\b(?:test|examen(?:es)?|ambient(?:e|al)|consulta|control|parche)\s*(?:de\s+parche)?\s*(\d{2,3})\b"
)
END_AMOUNT_PATTERN = re.compile(r"\s(\d{2,3})\s*$")
PAID_AMOUNT_PATTERN = re.compile(r"pagado\s*(\d+)")


@dataclass(frozen=True)
class Rule:
    name: str
    category: Category
    patterns: tuple[re.Pattern[str], ...]

    def matches(self, text: str) -> bool:
        return _matches_any(text, self.patterns)


# Priority order; injection comes before subcutaneous so that
# "dupixent" is not mistaken for an allergen vaccine.
CATEGORY_RULES: tuple[Rule, ...] = (
    Rule("tests", Category.TESTS, TEST_PATTERNS),
    Rule("injection", Category.INJECTION, INJECTION_PATTERNS),
    Rule("subcutaneous", Category.SUBCUTANEOUS, SUBCUTANEOUS_PATTERNS),
    Rule("roxair", Category.ROXAIR, ROXAIR_PATTERNS),
    Rule("medical_leave", Category.MEDICAL_LEAVE, MEDICAL_LEAVE_PATTERNS),
    Rule("control", Category.CONTROL, CONTROL_PATTERNS),
    Rule("consultation", Category.CONSULTATION, CONSULTATION_PATTERNS),
    Rule("implicit_dosage", Category.SUBCUTANEOUS, (DECIMAL_DOSAGE_PATTERN,)),
)


def _event_text(event: Any) -> tuple[str, str]:
    summary = fold_text(getattr(event, "summary", "")).strip()
    combined = f"{summary} {fold_text(getattr(event, 'description', ''))}".strip()
    return summary, combined


def is_ignored(summary: str | None, description: str | None = None) -> bool:
    folded_summary = fold_text(summary).strip()
    combined = f"{folded_summary} {fold_text(description)}".strip()
    return any(p.search(folded_summary) or p.search(combined) for p in IGNORE_PATTERNS)


def has_no_show(text: str | None) -> bool:
    return _matches_any(fold_text(text), NOT_ATTENDED_PATTERNS)


def match_category(summary: str, text: str) -> Category | None:
    if any(p.search(summary) or p.search(text) for p in IGNORE_PATTERNS):
        return None
    for rule in CATEGORY_RULES:
        if rule.matches(text):
            return rule.category
    return None


def normalize_category(value: str | None) -> Category | None:
    """Map user or stored text onto the closed taxonomy."""
    folded = fold_text(value).strip()
    if not folded:
        return None
    for category in Category:
        if folded in {fold_text(category.value), category.name.casefold()}:
            return category
    return None


def normalize_treatment_stage(value: str | None) -> TreatmentStage | None:
    folded = fold_text(value).strip()
    if not folded:
        return None
    for stage in TreatmentStage:
        if folded in {fold_text(stage.value), stage.name.casefold()}:
            return stage
    return None


def parse_amount(value: Any) -> int | None:
    """Parse a user-entered currency amount.

    Non-digit characters are stripped (``"$50.000"`` is 50000). Empty or
    digit-less input means "unknown" and yields ``None``, never ``0``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        return int(value) if value >= 0 else None
    digits = re.sub(r"[^0-9]", "", str(value))
    if not digits:
        return None
    return int(digits)


def _normalize_amount_token(raw: str) -> int | None:
    expanded = MIL_PATTERN.sub(lambda m: str(int(m.group(1)) * 1000), raw)
    digits = re.sub(r"[^0-9]", "", expanded)
    if not digits:
        return None
    if _matches_any(digits, PHONE_PATTERNS):
        return None
    # Longer runs are RUTs, ids or several numbers glued together.
    if len(digits) > 8:
        return None
    value = int(digits)
    if value <= 0:
        return None
    # Free text writes thousands of pesos: "50" means 50000.
    normalized = value if value >= 1000 else value * 1000
    if normalized > MAX_REASONABLE_AMOUNT:
        return None
    return normalized


def extract_amounts(text: str) -> tuple[int | None, int | None]:
    """Return ``(expected, paid)`` found in folded event text."""
    expected: int | None = None
    paid: int | None = None

    for match in SLASH_AMOUNT_PATTERN.finditer(text):
        slash_paid = _normalize_amount_token(match.group(1))
        slash_expected = _normalize_amount_token(match.group(2))
        if slash_paid is not None and paid is None:
            paid = slash_paid
        if slash_expected is not None and expected is None:
            expected = slash_expected

    for match in PAREN_PATTERN.finditer(text):
        content = match.group(1)
        if SLASH_FORMAT_PATTERN.match(content):
            continue
        content = DATE_PATTERN.sub("", content)
        numeric = AMOUNT_START_PATTERN.match(content)
        amount = _normalize_amount_token(numeric.group(0) if numeric else content)
        if amount is None:
            continue
        if "pagado" in content:
            paid = amount
            if expected is None:
                expected = amount
            continue
        if expected is None:
            expected = amount

    if expected is None:
        for match in TYPO_AMOUNT_PATTERN.finditer(text):
            amount = _normalize_amount_token(match.group(1)[-2:])
            if amount is not None and expected is None:
                expected = amount
        for match in ML_MIL_PATTERN.finditer(text):
            amount = _normalize_amount_token(match.group(1))
            if amount is not None and expected is None:
                expected = amount

    for fallback in (KEYWORD_AMOUNT_PATTERN, CONTEXT_AMOUNT_PATTERN):
        if expected is not None:
            break
        for match in fallback.finditer(text):
            amount = _normalize_amount_token(match.group(1))
            if amount is not None:
                expected = amount
                break

    if expected is None:
        end_match = END_AMOUNT_PATTERN.search(text)
        if end_match:
            expected = _normalize_amount_token(end_match.group(1))

    for match in PAID_AMOUNT_PATTERN.finditer(text):
        amount = _normalize_amount_token(match.group(1))
        if amount is None:
            continue
        paid = amount
        if expected is None:
            expected = amount

    if SIN_COSTO_PATTERN.search(text) and expected is None and paid is None:
        return 0, 0
    return expected, paid


def _refine_paid(text: str, expected: int | None, paid: int | None) -> int | None:
    if _matches_any(text, PENDING_CONFIRMATION_PATTERNS) and paid is not None:
        return None
    if _matches_any(text, MONEY_CONFIRMED_PATTERNS) and expected is not None and paid is None:
        return expected
    if _matches_any(text, HOME_VISIT_PATTERNS) and expected is not None and not paid:
        return expected
    return paid


def _parse_decimal(value: str) -> float | None:
    try:
        return float(value.replace(",", "."))
    except ValueError:
        return None


def extract_dosage(text: str) -> tuple[float, str] | None:
    for pattern in DOSAGE_PATTERNS:
        match = pattern.search(text)
        if match:
            value = _parse_decimal(match.group(1))
            if value is not None:
                return value, match.group(2)
    for pattern in (CLUSTOID_DOSAGE_PATTERN, DECIMAL_STANDALONE_PATTERN):
        match = pattern.search(text)
        if match:
            value = _parse_decimal(match.group(1))
            if value is not None:
                return value, "ml"
    return None


def detect_treatment_stage(text: str) -> TreatmentStage | None:
    if _matches_any(text, INDUCTION_PATTERNS):
        return TreatmentStage.INDUCTION
    if _matches_any(text, MAINTENANCE_PATTERNS) or HALF_ML_PATTERN.search(text):
        return TreatmentStage.MAINTENANCE
    return None


def _has_started(event: Any, now: datetime | None) -> bool:
    start = getattr(event, "start", None)
    if now is None or start is None:
        return True
    return _ensure_tz(start) <= _ensure_tz(now)


def classify(event: Any, existing: DerivedFields | None = None, now: datetime | None = None) -> DerivedFields:
    """Derive business fields from an event's summary and description.

    ``existing`` carries the values already stored for the event; any field
    the text says nothing about keeps its existing value. ``now`` gates the
    positive attendance heuristic so a future appointment is never marked
    as attended.
    """
    base = existing or DerivedFields()
    summary, text = _event_text(event)

    matched = match_category(summary, text)
    category = matched.value if matched is not None else base.category
    is_roxair = category == Category.ROXAIR.value
    is_subcutaneous = category == Category.SUBCUTANEOUS.value

    if _matches_any(text, NOT_ATTENDED_PATTERNS):
        attended: bool | None = False
    elif _matches_any(text, ATTENDED_PATTERNS) and _has_started(event, now):
        attended = True
    elif is_roxair and READY_PATTERN.search(text):
        attended = True
    else:
        attended = base.attended

    found_expected, found_paid = extract_amounts(text)
    found_paid = _refine_paid(text, found_expected, found_paid)
    amount_expected = found_expected if found_expected is not None else base.amount_expected
    if amount_expected is None and is_roxair:
        amount_expected = ROXAIR_DEFAULT_AMOUNT
    amount_paid = found_paid if found_paid is not None else base.amount_paid
    if attended is False and amount_expected is not None:
        amount_paid = 0
    elif amount_paid is None and is_roxair and (
        attended is True or _matches_any(text, MONEY_CONFIRMED_PATTERNS)
    ):
        amount_paid = amount_expected

    dosage_value: float | None = None
    dosage_unit: str | None = None
    treatment_stage: str | None = None
    if is_subcutaneous:
        dosage = extract_dosage(text)
        if dosage is not None:
            dosage_value, dosage_unit = dosage
        else:
            dosage_value, dosage_unit = base.dosage_value, base.dosage_unit
        stage = detect_treatment_stage(text)
        if stage is None and dosage is not None:
            stage = TreatmentStage.INDUCTION if dosage[0] < 0.5 else TreatmentStage.MAINTENANCE
        treatment_stage = stage.value if stage is not None else base.treatment_stage

    control_included = True if _matches_any(text, CONTROL_PATTERNS) else base.control_included
    is_home_visit = True if _matches_any(text, HOME_VISIT_PATTERNS) else base.is_home_visit

    return DerivedFields(
        category=category,
        treatment_stage=treatment_stage,
        dosage_value=dosage_value,
        dosage_unit=dosage_unit,
        amount_expected=amount_expected,
        amount_paid=amount_paid,
        attended=attended,
        control_included=False if control_included is None else control_included,
        is_home_visit=False if is_home_visit is None else is_home_visit,
    )


def fill_missing(current: DerivedFields, computed: DerivedFields) -> DerivedFields:
    """Merge ``computed`` into ``current`` without replacing known values.

    A no-show detected in the text still wins over a stored ``True``.
    """
    merged = replace(current)
    for name in ("category", "amount_expected", "amount_paid", "control_included", "is_home_visit"):
        if getattr(merged, name) in (None, ""):
            setattr(merged, name, getattr(computed, name))
    if computed.attended is False:
        merged.attended = False
    elif merged.attended is None:
        merged.attended = computed.attended
    if merged.category == Category.SUBCUTANEOUS.value:
        for name in ("treatment_stage", "dosage_value", "dosage_unit"):
            if getattr(merged, name) in (None, ""):
                setattr(merged, name, getattr(computed, name))
    else:
        merged.treatment_stage = None
        merged.dosage_value = None
        merged.dosage_unit = None
    return merged


def classification_options() -> dict[str, list[str]]:
    return {
        "categories": [category.value for category in Category],
        "treatmentStages": [stage.value for stage in TreatmentStage],
    }
