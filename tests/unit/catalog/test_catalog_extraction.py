"""Tests for section splitting, item parsing and catalog extraction runs."""

from __future__ import annotations

import json

import pytest

from concierge.catalog.extraction import (
    CatalogExtractor,
    Section,
    catalog_item_id,
    parse_extracted_items,
    split_sections,
)
from concierge.catalog.store import CatalogStore
from concierge.db.models import KnowledgeChunk, KnowledgeDocument
from concierge.errors import ProviderError, TenantNotFoundError

_MENU = (
    "Harbour Cafe serves breakfast all day long.\n"
    "COFFEE\n"
    "Espresso 2.50 EUR, cappuccino 3 EUR, flat white 3.50 EUR.\n"
    "Pastries:\n"
    "Croissant 2 EUR and pain au chocolat 2.20 EUR, baked daily.\n"
)

_ITEMS = [
    {"name": "Espresso", "section": "Coffee", "price": 2.5, "currency": "EUR", "priceType": "fixed"},
    {"name": "Cappuccino", "section": "Coffee", "price": 3, "currency": "EUR", "priceType": "fixed"},
    {"name": "Croissant", "section": "Pastries", "price": 2, "currency": "EUR", "priceType": "fixed"},
]


@pytest.fixture
def store(tmp_db):
    return CatalogStore(tmp_db)


@pytest.fixture
def extractor(repo, store, generator, config):
    return CatalogExtractor(repo, store, generator, config)


def _add_document(repo, doc_id: str, text: str = _MENU) -> None:
    repo.create_document(
        KnowledgeDocument(id=doc_id, tenant_id="t1", source_type="text", source_name=doc_id)
    )
    with repo.chunk_writer(4) as writer:
        writer.add(
            repo.upsert_chunk_op(
                KnowledgeChunk(
                    chunk_id=f"{doc_id}-0",
                    tenant_id="t1",
                    document_id=doc_id,
                    chunk_index=0,
                    text=text,
                    embedding=[1.0, 0.0, 0.0, 0.0],
                    source_name=doc_id,
                )
            )
        )
    repo.finalize_document(doc_id, [f"{doc_id}-0"], "hash")


# ------------------------------------------------------------------
# Sections
# ------------------------------------------------------------------


def test_split_sections_at_headers():
    sections = split_sections(_MENU)

    assert [s.header for s in sections] == ["General", "COFFEE", "Pastries"]
    assert sections[1].text.startswith("Espresso")


def test_split_sections_markdown_headers_and_short_bodies():
    text = "## Drinks\nLemonade and iced tea, freshly made.\n## Extras\nice\n"

    sections = split_sections(text)

    assert [s.header for s in sections] == ["Drinks"]


# ------------------------------------------------------------------
# Parsing
# ------------------------------------------------------------------


def test_parse_items_from_fenced_json():
    response = "```json\n" + json.dumps(_ITEMS) + "\n```"

    items = parse_extracted_items(response, Section("COFFEE", "..."))

    assert [i["name"] for i in items] == ["Espresso", "Cappuccino", "Croissant"]
    assert items[1]["price"] == 3.0
    assert items[0]["price_type"] == "fixed"


def test_parse_items_sanitizes_fields():
    response = json.dumps(
        [
            {"name": "  Tasting menu ", "price": "45", "currency": "YEN", "priceType": "sometimes"},
            {"name": "", "price": 3},
            "not an item",
        ]
    )

    items = parse_extracted_items(response, Section("Dinner", "..."))

    assert items == [
        {
            "name": "Tasting menu",
            "section": "Dinner",
            "description": None,
            "price": None,
            "currency": None,
            "price_type": "unknown",
            "tags": [],
        }
    ]


def test_parse_items_without_json_array():
    assert parse_extracted_items("Sorry, I found nothing.", Section("General", "...")) == []
    assert parse_extracted_items("[not json]", Section("General", "...")) == []


def test_item_id_is_deterministic():
    first = catalog_item_id("t1", "menu", "Coffee", "Espresso", 2.5, "fixed")

    assert first == catalog_item_id("t1", "menu", " coffee ", "ESPRESSO", 2.5, "fixed")
    assert len(first) == 20
    assert first != catalog_item_id("t1", "menu", "Coffee", "Espresso", 3.0, "fixed")
    assert first != catalog_item_id("t2", "menu", "Coffee", "Espresso", 2.5, "fixed")


# ------------------------------------------------------------------
# Extraction runs
# ------------------------------------------------------------------


def test_extract_stores_items(extractor, store, repo, generator, tenant):
    _add_document(repo, "menu")
    generator.reply = json.dumps(_ITEMS)

    run = extractor.extract("t1")

    assert run.document_count == 1
    assert sorted(i.name for i in run.items) == ["Cappuccino", "Croissant", "Espresso"]
    stored = store.list_items("t1")
    assert [(i.section, i.name) for i in stored] == [
        ("Coffee", "Cappuccino"),
        ("Coffee", "Espresso"),
        ("Pastries", "Croissant"),
    ]
    assert all(i.extraction_run_id == run.run_id for i in stored)
    assert "Espresso 2.50 EUR" in generator.prompts[1]
    assert "BUSINESS TYPE: cafes" in generator.prompts[0]


def test_extract_twice_upserts_same_items(extractor, store, repo, generator, tenant):
    _add_document(repo, "menu")
    generator.reply = json.dumps(_ITEMS)

    first = extractor.extract("t1")
    second = extractor.extract("t1")

    assert sorted(i.id for i in first.items) == sorted(i.id for i in second.items)
    assert second.deactivated == 0
    stored = store.list_items("t1", include_inactive=True)
    assert len(stored) == 3
    assert {i.extraction_run_id for i in stored} == {second.run_id}


def test_items_missing_from_a_later_run_are_deactivated(extractor, store, repo, generator, tenant):
    _add_document(repo, "menu")
    generator.reply = json.dumps(_ITEMS)
    extractor.extract("t1")
    generator.reply = json.dumps(_ITEMS[:2])

    run = extractor.extract("t1")

    assert run.deactivated == 1
    assert [i.name for i in store.list_items("t1")] == ["Cappuccino", "Espresso"]
    inactive = [i for i in store.list_items("t1", include_inactive=True) if i.status == "inactive"]
    assert [i.name for i in inactive] == ["Croissant"]


def test_only_active_documents_are_read(extractor, store, repo, generator, config, tenant):
    _add_document(repo, "menu")
    _add_document(repo, "old", text="OLD MENU\nFilter coffee 1 EUR, served until noon.\n")
    repo.set_document_status("t1", "old", "disabled", config.ingestion.max_ops_per_commit)
    generator.reply = json.dumps(_ITEMS)

    run = extractor.extract("t1")

    assert run.document_count == 1
    assert {i.document_id for i in store.list_items("t1")} == {"menu"}
    assert not any("Filter coffee" in p for p in generator.prompts)


def test_extract_selected_documents(extractor, store, repo, generator, tenant):
    _add_document(repo, "menu")
    _add_document(repo, "drinks", text="DRINKS\nFresh orange juice 4 EUR, lemonade 3 EUR.\n")
    generator.reply = json.dumps(_ITEMS[:1])

    run = extractor.extract("t1", ["drinks", "unknown"])

    assert run.document_count == 1
    assert [i.document_id for i in store.list_items("t1")] == ["drinks"]


def test_extract_without_documents(extractor, generator, tenant):
    run = extractor.extract("t1")
    assert run.document_count == 0
    assert run.items == []
    assert generator.prompts == []


def test_extract_unknown_tenant(extractor):
    with pytest.raises(TenantNotFoundError):
        extractor.extract("ghost")


def test_generation_failure_keeps_existing_catalog(extractor, store, repo, generator, tenant):
    _add_document(repo, "menu")
    generator.reply = json.dumps(_ITEMS)
    extractor.extract("t1")
    generator.fail = True

    with pytest.raises(ProviderError):
        extractor.extract("t1")

    assert len(store.list_items("t1")) == 3
