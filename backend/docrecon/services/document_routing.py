"""Document routing rules: category, target table and column suggestions (deterministic, no AI)."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Iterable

GENERAL_CATEGORY = "general_document"
DEFAULT_TARGET_TABLE = "activity_data"

# Evaluated in order; first match wins.
# category -> (file name keywords, content keywords matched as whole words)
CATEGORY_RULES: list[tuple[str, tuple[str, ...], tuple[str, ...]]] = [
    ("energy_invoice", ("energy", "energia", "electricity"), ("kwh", "mwh")),
    ("waste_document", ("waste", "residuo", "residuos"), ("mtr", "waste")),
    ("fuel_invoice", ("fuel", "combustivel", "diesel"), ("litres", "liters", "litros")),
    ("license_document", ("license", "licence", "licenca"), ()),
]

TARGET_TABLES: dict[str, str] = {
    "energy_invoice": "activity_data",
    "fuel_invoice": "activity_data",
    "waste_document": "waste_logs",
    "license_document": "licenses",
    GENERAL_CATEGORY: "activity_data",
}

# target table -> [(keywords in the last field path segment, column)]
COLUMN_RULES: dict[str, list[tuple[tuple[str, ...], str]]] = {
    "activity_data": [
        (("quantity", "quantidade", "consumption", "amount"), "quantity"),
        (("unit", "unidade"), "unit"),
        (("period_start", "periodo_inicio", "start_date"), "period_start_date"),
        (("period_end", "periodo_fim", "end_date"), "period_end_date"),
        (("total", "valor_total", "cost"), "total_cost"),
    ],
    "waste_logs": [
        (("quantity", "quantidade", "weight"), "quantity"),
        (("unit", "unidade"), "unit"),
        (("mtr", "manifest"), "mtr_number"),
        (("class", "classe", "waste_type"), "waste_class"),
        (("destination", "destinacao", "disposal"), "final_treatment_type"),
    ],
    "licenses": [
        (("number", "numero"), "license_number"),
        (("issuer", "orgao", "agency"), "issuing_body"),
        (("issue_date", "emissao"), "issue_date"),
        (("expiration", "expiry", "validade", "vencimento"), "expiration_date"),
    ],
}


@dataclass(frozen=True)
class DocumentRouting:
    category: str
    target_table: str
    suggested_mappings: dict[str, str] = field(default_factory=dict)


def _words(text: str) -> set[str]:
    return set(re.findall(r"[a-z0-9]+", text.lower()))


def detect_document_category(file_path: str, items: Iterable[Any]) -> str:
    name = PurePosixPath(file_path or "").name.lower()
    content = _words(
        json.dumps(
            [[item.field_path, item.extracted_value] for item in items],
            default=str,
            ensure_ascii=False,
        )
    )
    for category, name_keywords, content_keywords in CATEGORY_RULES:
        if any(keyword in name for keyword in name_keywords):
            return category
        if content & set(content_keywords):
            return category
    return GENERAL_CATEGORY


def target_table_for(category: str) -> str:
    return TARGET_TABLES.get(category, DEFAULT_TARGET_TABLE)


def suggest_mappings(items: Iterable[Any], target_table: str) -> dict[str, str]:
    """``field_path -> column`` for fields whose name matches a column of *target_table*."""
    rules = COLUMN_RULES.get(target_table, [])
    mappings: dict[str, str] = {}
    for item in items:
        leaf = item.field_path.rsplit(".", 1)[-1].lower()
        for keywords, column in rules:
            if any(keyword in leaf for keyword in keywords):
                mappings[item.field_path] = column
                break
    return mappings


def route_document(file_path: str, items: Iterable[Any]) -> DocumentRouting:
    items = list(items)
    category = detect_document_category(file_path, items)
    table = target_table_for(category)
    return DocumentRouting(
        category=category,
        target_table=table,
        suggested_mappings=suggest_mappings(items, table),
    )
