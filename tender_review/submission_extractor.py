"""
submission_extractor.py — How and in what form a bid must be delivered.

Delivery method is decided by keyword priority, first hit wins:
email → online portal → physical delivery → postal mail. A notice that
mentions both an email address and a courier is almost always an
electronic submission with a courier fallback for samples, so the order
matters more than the counts.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from tender_review.extraction import ExtractorContext, FieldExtractor
from tender_review.text_utils import collect_list_blocks, normalize_whitespace

_DELIVERY_METHODS = (
    ("email", re.compile(r"\be-?mail\b", re.I)),
    ("online portal", re.compile(r"online\s+portal|e-procurement|\bportal\b", re.I)),
    ("physical delivery", re.compile(r"hand\s+deliver(?:y|ed)|\bcourier\b", re.I)),
    ("postal mail", re.compile(r"\bpostal\b|\bmail\b", re.I)),
)

_EMAIL_ADDRESS_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_EMAIL_LINE_RE = re.compile(r"(?:email|e-mail)\s+(?:to|submission)[:\s]*([^\n]+)", re.I)
_PORTAL_LINE_RE = re.compile(r"(?:online\s+portal|e-procurement\s+system)[:\s]*([^\n]+)", re.I)
_ADDRESS_RE = re.compile(r"(?:delivery\s+address|postal\s+address|submit\s+to)[:\s]*([^\n]+)", re.I)
_INSTRUCTION_RES = (
    re.compile(r"submission\s+(?:instructions|procedure)[:\s]*([^\n]+)", re.I),
    re.compile(r"how\s+to\s+submit[:\s]*([^\n]+)", re.I),
    re.compile(r"delivery\s+instructions[:\s]*([^\n]+)", re.I),
)

_COPIES_RE = re.compile(r"(\d+)\s*(?:hard\s+)?copies?\s+(?:are\s+)?(?:required|must\s+be\s+submitted)", re.I)
_ORIGINAL_RE = re.compile(r"\boriginal\s+(?:copy|and)\b|\b\d+\s+original\b", re.I)
_HARD_COPY_RE = re.compile(r"hard\s+cop(?:y|ies)|printed\s+cop(?:y|ies)|physical\s+cop(?:y|ies)", re.I)
_ELECTRONIC_RE = re.compile(r"soft\s+cop(?:y|ies)|digital\s+cop(?:y|ies)|electronic\s+cop(?:y|ies)", re.I)
_FILE_FORMAT_RE = re.compile(r"\b(?:pdf|word|excel|powerpoint|docx?|xlsx?|pptx?)\s+format\b", re.I)
_FORMAT_SPEC_RE = re.compile(r"format\s+(?:requirements|specifications)[:\s]*([^\n]+)", re.I)

_STRUCTURE_RES = (
    re.compile(r"(?:section|part|volume)\s+(\d+)[:\s]*([^\n]+)", re.I),
    re.compile(r"(?:technical|commercial|financial)\s+proposal[:\s]*([^\n]+)", re.I),
    re.compile(r"(?:executive\s+summary|cover\s+letter|introduction)[:\s]*([^\n]+)", re.I),
)
_STRUCTURE_LIST_RE = re.compile(r"proposal\s+(?:structure|sections|components)", re.I)
_REQUIRED_RE = re.compile(r"required|mandatory|must", re.I)

_PROCEDURE_RES = (
    re.compile(r"^\s*(?:step|stage)\s+(\d+)[:.\s]*([^\n]+)", re.I | re.M),
    re.compile(r"^\s*(?:first|second|third|fourth|fifth|finally)[,:\s]+([^\n]+)", re.I | re.M),
)


class SubmissionMechanicsExtractor(FieldExtractor):
    key = "submissionMechanics"
    name = "Submission Mechanics"
    description = "Extracts submission format, delivery method, and procedural requirements"

    keywords = (
        "submission", "submit", "delivery", "format", "proposal format",
        "submission format", "submission requirements", "submission method",
        "delivery method", "how to submit", "submission process",
        "proposal submission", "bid submission", "tender submission",
        "electronic submission", "email submission", "postal submission",
        "hand delivery", "courier", "registered mail", "certified mail",
        "online portal", "e-procurement", "upload", "portal submission",
        "hard copy", "soft copy", "digital copy", "printed copy",
        "number of copies", "copies required", "original copy",
        "sealed envelope", "sealed bid", "envelope marking",
        "proposal structure", "document structure", "proposal sections",
    )
    strong_keywords = ("submission", "submit", "delivery", "format")
    trace_patterns = (
        re.compile(r"submission\s+(?:requirements|method|format|process)[:\s]", re.I),
        re.compile(r"proposal\s+(?:submission|format|structure)[:\s]", re.I),
        re.compile(r"bid\s+submission[:\s]", re.I),
        re.compile(r"delivery\s+(?:method|requirements)[:\s]", re.I),
        re.compile(r"how\s+to\s+submit[:\s]", re.I),
        _COPIES_RE,
        _HARD_COPY_RE,
        _ELECTRONIC_RE,
        _FILE_FORMAT_RE,
        _EMAIL_LINE_RE,
        _ADDRESS_RE,
        re.compile(r"submit\s+(?:via|through)[:\s]*[^\n]+", re.I),
        _PORTAL_LINE_RE,
        re.compile(r"hand\s+delivery|courier\s+service|registered\s+mail|certified\s+mail", re.I),
    )

    def build_value(self, text: str, ctx: ExtractorContext, matches: int,
                    keywords_found: List[str]) -> Dict[str, Any]:
        fmt = extract_format(text)
        delivery = extract_delivery(text)
        structure = extract_structure(text)
        procedures = extract_procedures(text)
        return {
            "format": fmt,
            "delivery": delivery,
            "structure": structure,
            "procedures": procedures,
            "summary": summarize(fmt, delivery, structure, procedures),
            "matchCount": matches,
        }


def extract_format(text: str) -> Dict[str, Any]:
    fmt: Dict[str, Any] = {}

    copies = _COPIES_RE.search(text)
    if copies:
        fmt["copies"] = int(copies.group(1))
    if _ORIGINAL_RE.search(text):
        fmt["originalRequired"] = True

    kinds = []
    if _HARD_COPY_RE.search(text):
        kinds.append("hard copy")
    if _ELECTRONIC_RE.search(text):
        kinds.append("electronic copy")
    if kinds:
        fmt["formats"] = kinds

    file_formats: List[str] = []
    for m in _FILE_FORMAT_RE.finditer(text):
        label = m.group(0).lower()
        if label not in file_formats:
            file_formats.append(label)
    if file_formats:
        fmt["fileFormats"] = file_formats

    specs = [m.group(1).strip() for m in _FORMAT_SPEC_RE.finditer(text)]
    if specs:
        fmt["specifications"] = specs
    return fmt


def delivery_method(text: str) -> Optional[str]:
    for method, pattern in _DELIVERY_METHODS:
        if pattern.search(text):
            return method
    return None


def extract_delivery(text: str) -> Dict[str, Any]:
    delivery: Dict[str, Any] = {}
    method = delivery_method(text)
    if method:
        delivery["method"] = method

    if method == "email":
        address = _EMAIL_ADDRESS_RE.search(text)
        line = _EMAIL_LINE_RE.search(text)
        if address:
            delivery["email"] = address.group(0).rstrip(".")
        elif line:
            delivery["email"] = line.group(1).strip()
    elif method == "online portal":
        portal = _PORTAL_LINE_RE.search(text)
        if portal:
            delivery["portal"] = portal.group(1).strip()

    address = _ADDRESS_RE.search(text)
    if address:
        delivery["address"] = address.group(1).strip()

    instructions = []
    for pattern in _INSTRUCTION_RES:
        instructions.extend(m.group(1).strip() for m in pattern.finditer(text))
    if instructions:
        delivery["instructions"] = instructions
    return delivery


def extract_structure(text: str) -> List[Dict[str, Any]]:
    structure: List[Dict[str, Any]] = []
    seen = set()

    def add(entry: Dict[str, Any]) -> None:
        key = entry["section"].lower()
        if key in seen:
            return
        seen.add(key)
        structure.append(entry)

    for pattern in _STRUCTURE_RES:
        for m in pattern.finditer(text):
            entry: Dict[str, Any] = {"section": normalize_whitespace(m.group(0).split(":")[0])}
            if pattern.groups == 2:
                entry["order"] = int(m.group(1))
                entry["description"] = m.group(2).strip()
            else:
                entry["description"] = m.group(1).strip()
            if re.search(r"required|mandatory|must\s+include", m.group(0), re.I):
                entry["required"] = True
            add(entry)

    for _, items in collect_list_blocks(text, _STRUCTURE_LIST_RE):
        for item in items:
            if len(item) > 5:
                add({"section": normalize_whitespace(item), "required": bool(_REQUIRED_RE.search(item))})

    return structure


def extract_procedures(text: str) -> List[Dict[str, Any]]:
    procedures: List[Dict[str, Any]] = []
    for pattern in _PROCEDURE_RES:
        for m in pattern.finditer(text):
            step: Dict[str, Any] = {
                "step": normalize_whitespace(re.split(r"[:,]", m.group(0), maxsplit=1)[0]),
                "description": m.group(m.lastindex or 0).strip(),
            }
            if pattern.groups == 2:
                step["order"] = int(m.group(1))
            procedures.append(step)
    numbered = sorted((p for p in procedures if "order" in p), key=lambda p: p["order"])
    return numbered + [p for p in procedures if "order" not in p]


def summarize(fmt: Dict[str, Any], delivery: Dict[str, Any],
              structure: List[Dict[str, Any]], procedures: List[Dict[str, Any]]) -> str:
    parts: List[str] = []

    format_parts = []
    if fmt.get("copies"):
        format_parts.append(f"{fmt['copies']} copies required")
    if fmt.get("originalRequired"):
        format_parts.append("original copy required")
    if fmt.get("formats"):
        format_parts.append(", ".join(fmt["formats"]))
    if fmt.get("fileFormats"):
        format_parts.append("File formats: " + ", ".join(fmt["fileFormats"]))
    if format_parts:
        parts.append("Format: " + "; ".join(format_parts))

    if delivery.get("method"):
        delivery_parts = [f"Method: {delivery['method']}"]
        for key, label in (("email", "Email"), ("portal", "Portal"), ("address", "Address")):
            if delivery.get(key):
                delivery_parts.append(f"{label}: {delivery[key]}")
        parts.append("Delivery: " + "; ".join(delivery_parts))

    sections = [s["section"] for s in structure if s.get("required") is not False][:4]
    if sections:
        parts.append("Structure: " + ", ".join(sections))

    if procedures:
        parts.append("Process: " + " → ".join(p["step"] for p in procedures[:3]))

    return "\n\n".join(parts) or "Submission requirements found but require manual review."
