"""
TenderReview — Citation-backed review packages for procurement tenders

Ingests tender documents (PDF, DOCX, text), extracts five key fields with
page-level citations, renders a summary and a review checklist, and gates
the tender for human approval through a configurable step pipeline.
"""

__version__ = "1.0.0"
__author__ = "TenderReview"
