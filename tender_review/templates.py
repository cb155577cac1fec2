"""
templates.py — Built-in summary templates and checklist template schemas.

Summary templates are Jinja2 source strings rendered by TemplateRenderer.
The render context is:

  tender      {id, title, agency, status, published_at, due_at}
  fields      one entry per field key, always present:
              {value, confidence, citations: [{id, page, snippet, ...}]}
  traceLinks  citation id → citation, across all fields
  metadata    {generated_at, template_name, version}

plus the helpers TemplateRenderer installs (format_date, percent,
format_list, the `identified` test, cite / cite_all). Every "## " heading
becomes its own SummaryBlock, so each field section must start with one.

Checklist templates only list items; the auto-check logic for an item
lives in checklist.RULES under the same key. An item without a rule
stays pending for manual review.
"""

from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, Field


class SummaryTemplate(BaseModel):
    id: str
    name: str
    version: str = "1.0"
    body: str
    # Block keys a complete render must produce; empty means no check
    block_keys: List[str] = Field(default_factory=list)


class ChecklistTemplateItem(BaseModel):
    key: str
    label: str
    required: bool = True
    description: str = ""


class ChecklistTemplate(BaseModel):
    id: str
    name: str
    items: List[ChecklistTemplateItem] = Field(default_factory=list)


_FIELD_SECTION_MACRO = """\
{% macro field_section(key, label) -%}
{% set f = fields[key] %}
{% if f is identified %}
{{ f.value.summary }}

**Confidence:** {{ f.confidence | percent }} {{ cite_all(key) }}
{% else %}
*{{ label }} not clearly identified in the document.*
{% endif %}
{%- endmacro %}
"""

SUMMARY_V1 = SummaryTemplate(
    id="summary-v1",
    name="Standard Tender Summary",
    version="1.0",
    block_keys=[
        "project-scope",
        "eligibility-criteria",
        "evaluation-criteria",
        "submission-requirements",
        "deadline",
    ],
    body=_FIELD_SECTION_MACRO + """\
# Tender Summary: {{ tender.title }}
{% if tender.agency %}
**Agency:** {{ tender.agency }}
{% endif %}

## Project Scope
{{ field_section("scope", "Project scope") }}

## Eligibility Criteria
{{ field_section("eligibility", "Eligibility criteria") }}
{% if fields.eligibility is identified and fields.eligibility.value.minimumExperienceYears %}
- Minimum experience: {{ fields.eligibility.value.minimumExperienceYears }} years
{% endif %}

## Evaluation Criteria
{{ field_section("evaluationCriteria", "Evaluation criteria") }}
{% if fields.evaluationCriteria is identified and fields.evaluationCriteria.value.methodology %}
- Stages: {{ fields.evaluationCriteria.value.methodology | map(attribute="stage") | list | format_list }}
{% endif %}

## Submission Requirements
{{ field_section("submissionMechanics", "Submission requirements") }}

## Deadline
{% set d = fields.deadlineSubmission %}
{% if d is identified and d.value.primaryDeadline and d.value.primaryDeadline.date %}
**Submission deadline:** {{ d.value.primaryDeadline.date | format_date }}\
{% if d.value.primaryDeadline.time %} at {{ d.value.primaryDeadline.time }}{% endif %}

{% endif %}
{{ field_section("deadlineSubmission", "Submission deadline") }}

---
*Generated {{ metadata.generated_at | format_date }} with {{ metadata.template_name }} \
v{{ metadata.version }}. All extracted information requires human review.*
""",
)

SUMMARY_BRIEF_V1 = SummaryTemplate(
    id="summary-brief-v1",
    name="One-page Brief",
    version="1.0",
    block_keys=["summary"],
    body="""\
**{{ tender.title }}**
{% for key, label in [("scope", "Scope"), ("deadlineSubmission", "Deadline")] %}
{% if fields[key] is identified %}
- {{ label }}: {{ fields[key].value.summary | truncate(160) }} {{ cite_all(key, 1) }}
{% else %}
- {{ label }}: not clearly identified
{% endif %}
{% endfor %}
""",
)

SUMMARY_TEMPLATES: Dict[str, SummaryTemplate] = {
    t.id: t for t in (SUMMARY_V1, SUMMARY_BRIEF_V1)
}


CHECKLIST_INTERNAL_V1 = ChecklistTemplate(
    id="checklist-internal-v1",
    name="Internal Review Checklist",
    items=[
        ChecklistTemplateItem(key="project-scope-clear", label="Project scope is clearly defined"),
        ChecklistTemplateItem(key="eligibility-requirements", label="Eligibility requirements identified"),
        ChecklistTemplateItem(key="evaluation-criteria-defined", label="Evaluation criteria are defined"),
        ChecklistTemplateItem(key="submission-format-specified", label="Submission format is specified"),
        ChecklistTemplateItem(key="deadline-identified", label="Submission deadline identified"),
        ChecklistTemplateItem(key="deadline-future", label="Submission deadline is in the future"),
        ChecklistTemplateItem(
            key="high-confidence-extractions",
            label="All extractions reviewed for accuracy",
            description="Reviewer confirms every field against its cited source.",
        ),
    ],
)

CHECKLIST_COMPLIANCE_V1 = ChecklistTemplate(
    id="checklist-compliance-v1",
    name="Bidder Compliance Checklist",
    items=[
        ChecklistTemplateItem(key="tax-certificate", label="Valid tax clearance certificate"),
        ChecklistTemplateItem(key="iso-9001", label="ISO 9001 certification", required=False),
        ChecklistTemplateItem(key="financial-statements", label="Audited financial statements"),
        ChecklistTemplateItem(key="technical-specifications", label="Technical specifications provided"),
        ChecklistTemplateItem(key="legal-compliance", label="Legal compliance documentation"),
        ChecklistTemplateItem(key="insurance-coverage", label="Insurance coverage", required=False),
        ChecklistTemplateItem(key="company-registration", label="Company registration documents"),
        ChecklistTemplateItem(key="deadline-compliance", label="Submission deadline can be met"),
    ],
)

CHECKLIST_TEMPLATES: Dict[str, ChecklistTemplate] = {
    t.id: t for t in (CHECKLIST_INTERNAL_V1, CHECKLIST_COMPLIANCE_V1)
}


def get_checklist_template(template_id: str) -> ChecklistTemplate:
    try:
        return CHECKLIST_TEMPLATES[template_id]
    except KeyError:
        raise KeyError(
            f"Unknown checklist template '{template_id}'. "
            f"Available: {sorted(CHECKLIST_TEMPLATES)}"
        ) from None
