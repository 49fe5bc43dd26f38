"""Analyzer modules for LoginGuard."""

from .rule_models import RuleDocument, ScanInput, ScanResult, Threat
from .rule_store import RuleDocumentError, RuleStore, load_rule_document, parse_rule_document
from .rogue_apps import RogueAppRegistry
from .verdict import VerdictEngine

__all__ = [
    "RuleDocument",
    "ScanInput",
    "ScanResult",
    "Threat",
    "RuleDocumentError",
    "RuleStore",
    "load_rule_document",
    "parse_rule_document",
    "RogueAppRegistry",
    "VerdictEngine",
]
