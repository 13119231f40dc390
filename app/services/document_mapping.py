"""
ClientDesk - Document Mapping

Turns extracted document fields into updates for client and person records,
checks extracted legal names against what is already on file, and matches
identity documents to partners/managers by name.

Updates are flat dicts keyed by dotted paths in the stored (camelCase) shape,
e.g. ``{"businessInfo.trn": "100", "nameArabic": "..."}``. Keys starting
with ``_`` are side channels for follow-up flows (manager/partner creation)
and are not record fields.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Union

from dateutil import parser as date_parser

from app.models.client import (
    BUSINESS_DOCUMENT_CATEGORIES,
    DocumentCategory,
    PersonRole,
    ProcessingStatus,
)
from app.schemas.client import (
    ClientRecord,
    IdentityDocument,
    NameValidationIssue,
    NameValidationResult,
    PersonRecord,
)

logger = logging.getLogger(__name__)

ExtractedData = Dict[str, Dict[str, Any]]

VAT_CYCLES = ("MONTHLY", "QUARTERLY")


@dataclass
class FieldMapping:
    """Record updates derived from a document, plus which paths the AI filled."""
    updates: Dict[str, Any] = field(default_factory=dict)
    ai_extracted_fields: List[str] = field(default_factory=list)

    def set(self, path: str, value: Any, track: bool = True) -> None:
        self.updates[path] = value
        if track:
            self.ai_extracted_fields.append(path)

    @property
    def record_updates(self) -> Dict[str, Any]:
        """Updates without side-channel keys."""
        return {k: v for k, v in self.updates.items() if not k.startswith("_")}

    def to_dict(self) -> Dict[str, Any]:
        return {"updates": self.updates, "aiExtractedFields": self.ai_extracted_fields}


def field_value(extracted: Optional[ExtractedData], name: str) -> Any:
    """Value of an extracted field, None when absent or empty."""
    if not extracted:
        return None
    entry = extracted.get(name)
    if not isinstance(entry, dict):
        return None
    value = entry.get("value")
    if value in ("", [], None):
        return None
    return value


def parse_date(value: Any) -> Optional[date]:
    """Parse an extracted date; None if it cannot be read."""
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        pass
    try:
        return date_parser.parse(value, dayfirst=True).date()
    except (ValueError, OverflowError):
        logger.warning(f"Ignoring unparseable extracted date: {value!r}")
        return None


def _set_date(mapping: FieldMapping, path: str, raw: Any, track: bool = True) -> None:
    parsed = parse_date(raw)
    if parsed is not None:
        mapping.set(path, parsed, track=track)


# ===========================================
# BUSINESS INFO
# ===========================================

def map_extracted_data_to_business_info(
    category: Union[DocumentCategory, str],
    extracted: ExtractedData,
) -> FieldMapping:
    """
    Project extracted fields onto the client record.

    Person document categories produce no business info updates.
    """
    category = DocumentCategory(category)
    mapping = FieldMapping()
    if not category.is_business_document:
        return mapping

    common = (
        ("legalNameEnglish", "name"),
        ("legalNameArabic", "nameArabic"),
        ("address", "businessInfo.address"),
        ("emirate", "businessInfo.emirate"),
    )
    for source, path in common:
        value = field_value(extracted, source)
        if value is not None:
            mapping.set(path, value)

    if category == DocumentCategory.TRADE_LICENSE:
        license_number = field_value(extracted, "licenseNumber")
        if license_number is not None:
            mapping.set("businessInfo.licenseNumber", license_number)
        _set_date(mapping, "businessInfo.licenseStartDate", field_value(extracted, "licenseStartDate"))
        _set_date(mapping, "businessInfo.licenseExpiryDate", field_value(extracted, "licenseExpiryDate"))

        manager_name = field_value(extracted, "managerName")
        if manager_name is not None:
            mapping.set("_managerName", manager_name, track=False)
        partners = field_value(extracted, "partners")
        if isinstance(partners, list):
            mapping.set("_partners", [p for p in partners if isinstance(p, str) and p.strip()], track=False)

    elif category == DocumentCategory.VAT_CERTIFICATE:
        trn = field_value(extracted, "trn")
        if trn is not None:
            mapping.set("businessInfo.trn", trn)
        cycle = field_value(extracted, "vatReturnCycle")
        if isinstance(cycle, str) and cycle.strip().upper() in VAT_CYCLES:
            mapping.set("businessInfo.vatReturnCycle", cycle.strip().upper())

    elif category == DocumentCategory.CORPORATE_TAX_CERTIFICATE:
        ctrn = field_value(extracted, "ctrn")
        if ctrn is not None:
            mapping.set("businessInfo.ctrn", ctrn)
        _set_date(mapping, "businessInfo.corporateTaxDueDate", field_value(extracted, "taxPeriodDueDate"))

    return mapping


# ===========================================
# PERSON RECORDS
# ===========================================

def identity_prefix(category: DocumentCategory) -> Optional[str]:
    if category in (DocumentCategory.EMIRATES_ID_PARTNER, DocumentCategory.EMIRATES_ID_MANAGER):
        return "emiratesId"
    if category in (DocumentCategory.PASSPORT_PARTNER, DocumentCategory.PASSPORT_MANAGER):
        return "passport"
    return None


def person_role_for(category: DocumentCategory) -> Optional[PersonRole]:
    if category in (DocumentCategory.EMIRATES_ID_PARTNER, DocumentCategory.PASSPORT_PARTNER):
        return PersonRole.PARTNER
    if category in (DocumentCategory.EMIRATES_ID_MANAGER, DocumentCategory.PASSPORT_MANAGER):
        return PersonRole.MANAGER
    return None


def map_extracted_data_to_person(
    category: Union[DocumentCategory, str],
    extracted: ExtractedData,
) -> Dict[str, Any]:
    """Dotted updates for a partner/manager from an Emirates ID or passport."""
    category = DocumentCategory(category)
    prefix = identity_prefix(category)
    if prefix is None:
        return {}

    number_field = "idNumber" if prefix == "emiratesId" else "passportNumber"
    updates: Dict[str, Any] = {}

    name = field_value(extracted, "name")
    if name is not None:
        updates["name"] = name
    number = field_value(extracted, number_field)
    if number is not None:
        updates[f"{prefix}.number"] = number
    for source, target in (("issueDate", "issueDate"), ("expiryDate", "expiryDate")):
        parsed = parse_date(field_value(extracted, source))
        if parsed is not None:
            updates[f"{prefix}.{target}"] = parsed
    return updates


# ===========================================
# NAME CONSISTENCY
# ===========================================

def _collapse(value: str) -> str:
    return re.sub(r"\s+", " ", value.strip())


def normalize_english_name(value: str) -> str:
    return _collapse(value).upper()


def normalize_arabic_name(value: str) -> str:
    return _collapse(value)


NAME_FIELDS = (
    # (extracted field, client attribute, normalizer, label)
    ("legalNameEnglish", "name", normalize_english_name, "Name"),
    ("legalNameArabic", "name_arabic", normalize_arabic_name, "Arabic name"),
)


def validate_name_consistency(
    client: ClientRecord,
    extracted: ExtractedData,
    category: Union[DocumentCategory, str],
) -> NameValidationResult:
    """
    Compare newly extracted legal names with the client and sibling documents.

    A conflict with the client's stored name is an error; a conflict with the
    name extracted from another business document is a warning.
    """
    category = DocumentCategory(category)
    errors: List[NameValidationIssue] = []
    warnings: List[NameValidationIssue] = []

    siblings = [
        d for d in client.documents
        if d.category in BUSINESS_DOCUMENT_CATEGORIES
        and d.category != category
        and d.extracted_data
    ]

    for source, attribute, normalize, label in NAME_FIELDS:
        new_value = field_value(extracted, source)
        if not isinstance(new_value, str):
            continue

        existing = getattr(client, attribute)
        if existing and normalize(existing) != normalize(new_value):
            errors.append(NameValidationIssue(
                field=source,
                message=(
                    f'{label} mismatch detected. Existing: "{existing}", '
                    f'New from {category.value}: "{new_value}"'
                ),
                values={"existing": existing, "new": new_value},
                document_category=category.value,
            ))

        for sibling in siblings:
            sibling_value = field_value(sibling.extracted_data, source)
            if not isinstance(sibling_value, str):
                continue
            if normalize(sibling_value) != normalize(new_value):
                warnings.append(NameValidationIssue(
                    field=source,
                    message=(
                        f"{label} mismatch between documents. "
                        f'{sibling.category.value}: "{sibling_value}", {category.value}: "{new_value}"'
                    ),
                    values={sibling.category.value: sibling_value, category.value: new_value},
                    document_category=category.value,
                ))

    return NameValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


# ===========================================
# FUZZY NAME MATCHING
# ===========================================

def name_words(name: str) -> List[str]:
    return [w for w in _collapse(name).lower().split(" ") if w]


def words_match(first: str, second: str) -> bool:
    """
    Loose word equality for transliterated names.

    Equal words match; so does containment when the shorter word has at
    least 4 characters, or 80% positional agreement for words of 5+.
    """
    a, b = first.lower(), second.lower()
    if a == b:
        return True
    if (a in b or b in a) and min(len(a), len(b)) >= 4:
        return True
    if len(a) >= 5 and len(b) >= 5:
        matches = sum(1 for x, y in zip(a, b) if x == y)
        if matches / max(len(a), len(b)) >= 0.8:
            return True
    return False


def names_match(first: Optional[str], second: Optional[str]) -> bool:
    """
    Whether two person names plausibly refer to the same individual.

    Tries, in order: exact (case-insensitive), same words in any order,
    every word of the shorter name found in the longer, and finally a match
    between first/last words of each name.
    """
    if not first or not second:
        return False
    if first.strip().lower() == second.strip().lower():
        return True

    words1, words2 = name_words(first), name_words(second)
    if not words1 or not words2:
        return False

    sorted1, sorted2 = sorted(words1), sorted(words2)
    if len(sorted1) == len(sorted2) and all(words_match(a, b) for a, b in zip(sorted1, sorted2)):
        return True

    shorter, longer = (words1, words2) if len(words1) <= len(words2) else (words2, words1)
    if all(any(words_match(s, l) for l in longer) for s in shorter):
        return True

    def key_words(words: List[str]) -> List[str]:
        return words if len(words) == 1 else [words[0], words[-1]]

    return any(words_match(a, b) for a in key_words(words1) for b in key_words(words2))


def _empty_identity_updates(
    existing: Optional[IdentityDocument],
    prefix: str,
    updates: Dict[str, Any],
) -> Dict[str, Any]:
    current = existing or IdentityDocument()
    attributes = {"number": "number", "issueDate": "issue_date", "expiryDate": "expiry_date"}
    result = {}
    for key, attribute in attributes.items():
        path = f"{prefix}.{key}"
        if path in updates and not getattr(current, attribute):
            result[path] = updates[path]
    return result


def person_updates_from_documents(client: ClientRecord) -> Dict[uuid.UUID, Dict[str, Any]]:
    """
    Identity document data to copy onto matching partners/managers.

    Only processed person documents with an extracted name are considered,
    matched by name against persons of the document's role. Only fields that
    are empty on the person are filled.
    """
    persons_by_role: Dict[PersonRole, List[PersonRecord]] = {
        PersonRole.PARTNER: client.partners,
        PersonRole.MANAGER: client.managers,
    }
    planned: Dict[uuid.UUID, Dict[str, Any]] = {}

    for document in client.documents:
        if not document.category.is_person_document:
            continue
        if document.processing_status != ProcessingStatus.COMPLETED:
            continue
        extracted_name = field_value(document.extracted_data, "name")
        if not extracted_name:
            continue

        role = person_role_for(document.category)
        match = next(
            (p for p in persons_by_role[role] if p.name and names_match(extracted_name, p.name)),
            None,
        )
        if match is None:
            logger.info(f"No {role.value.lower()} matches '{extracted_name}' for document {document.id}")
            continue

        prefix = identity_prefix(document.category)
        mapped = map_extracted_data_to_person(document.category, document.extracted_data)
        existing = match.emirates_id if prefix == "emiratesId" else match.passport
        # Earlier documents in this pass may already have planned some fields
        pending = planned.get(match.id, {})
        fill = {
            path: value
            for path, value in _empty_identity_updates(existing, prefix, mapped).items()
            if path not in pending
        }
        if fill:
            planned.setdefault(match.id, {}).update(fill)

    return planned
