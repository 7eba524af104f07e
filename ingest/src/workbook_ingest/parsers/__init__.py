"""Parsing modules."""

from .workbook import ParsedSheet, parse_workbook

__all__ = ["ParsedSheet", "parse_workbook"]
