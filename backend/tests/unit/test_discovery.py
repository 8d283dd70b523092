"""
Unit Tests — DocumentDiscoveryService
══════════════════════════════════════
Runs against FakeOneDriveStore + InMemoryTrainingRepository (conftest.py).

Coverage targets:
  ✅ New supported files returned with category + folder path
  ✅ Unsupported extensions never returned
  ✅ Files already stored as TrainingDocuments excluded
  ✅ Second discovery with no new files → zero documents
  ✅ Descriptor metadata merged with file-level precedence
  ✅ Malformed descriptor → category still scanned, base metadata only
  ✅ Failing category skipped, other categories still returned
  ✅ Own store opened from the token and closed when none is passed
"""

from __future__ import annotations

import pytest

from legal_kb.repositories.training import NewTrainingDocument
from legal_kb.services.discovery import DocumentDiscoveryService


@pytest.fixture
def discovery(repository, store_factory) -> DocumentDiscoveryService:
    return DocumentDiscoveryService(repository, store_factory)


def _persisted(remote, category: str) -> NewTrainingDocument:
    return NewTrainingDocument(
        file_id=remote.id,
        category=category,
        filename=remote.name,
        folder_path=f"AI-Training/{category}",
        text="text",
        language="en",
        word_count=1,
        metadata={},
        processing_duration_ms=1,
    )


@pytest.mark.unit
@pytest.mark.discovery
class TestDiscovery:

    async def test_returns_new_supported_files(self, discovery, fake_store):
        fake_store.add_file("Contract", "lease.pdf")
        fake_store.add_file("Contract", "nda.docx")
        fake_store.add_file("Contract", "old.doc")
        fake_store.add_file("Contract", "budget.xlsx")

        result = await discovery.discover("token", ["Contract"])

        assert result.total_count == 3
        assert sorted(d.filename for d in result.documents) == ["lease.pdf", "nda.docx", "old.doc"]
        doc = next(d for d in result.documents if d.filename == "old.doc")
        assert doc.file_type == "doc"
        assert doc.category == "Contract"
        assert doc.folder_path == "AI-Training/Contract"
        assert fake_store.created_folders == ["AI-Training/Contract"]

    async def test_known_file_ids_are_excluded(self, discovery, fake_store, repository):
        known = fake_store.add_file("Contract", "lease.pdf")
        fresh = fake_store.add_file("Contract", "nda.docx")
        repository.add_document("Contract", file_id=known.id)

        result = await discovery.discover("token", ["Contract"])

        assert [d.file_id for d in result.documents] == [fresh.id]

    async def test_second_discovery_finds_nothing_new(self, discovery, fake_store, repository):
        for name in ("a.pdf", "b.docx"):
            fake_store.add_file("NDA", name)

        first = await discovery.discover("token", ["NDA"])
        for doc in first.documents:
            remote = next(f for f in fake_store.files["NDA"] if f.id == doc.file_id)
            await repository.save_training_document(_persisted(remote, "NDA"))

        second = await discovery.discover("token", ["NDA"])

        assert first.total_count == 2
        assert second.total_count == 0
        assert second.documents == []

    async def test_descriptor_metadata_merge(self, discovery, fake_store):
        fake_store.add_file("Contract", "lease.pdf")
        fake_store.add_file("Contract", "nda.docx")
        fake_store.descriptors["Contract"] = {
            "defaults": {"client": "Acme", "jurisdiction": "RO"},
            "files": {"lease.pdf": {"client": "Beta", "title": "Office lease"}},
        }

        result = await discovery.discover("token", ["Contract"])
        by_name = {d.filename: d.metadata for d in result.documents}

        assert by_name["lease.pdf"]["client"] == "Beta"
        assert by_name["lease.pdf"]["title"] == "Office lease"
        assert by_name["lease.pdf"]["jurisdiction"] == "RO"
        assert by_name["nda.docx"]["client"] == "Acme"
        assert by_name["nda.docx"]["category"] == "Contract"
        assert by_name["nda.docx"]["folder_path"] == "AI-Training/Contract"

    @pytest.mark.parametrize("descriptor", [["not", "an", "object"], ValueError("bad JSON")])
    async def test_malformed_descriptor_is_ignored(self, discovery, fake_store, descriptor):
        fake_store.add_file("Contract", "lease.pdf")
        fake_store.descriptors["Contract"] = descriptor

        result = await discovery.discover("token", ["Contract"])

        assert result.total_count == 1
        assert result.documents[0].metadata == {
            "category": "Contract",
            "folder_path": "AI-Training/Contract",
        }
        assert result.errors == []

    async def test_failing_category_is_skipped(self, discovery, fake_store):
        fake_store.add_file("Contract", "lease.pdf")
        fake_store.add_file("Litigation", "claim.pdf")
        fake_store.broken_categories.add("Contract")

        result = await discovery.discover("token", ["Contract", "Litigation"])

        assert [d.filename for d in result.documents] == ["claim.pdf"]
        assert result.total_count == 1
        assert result.skipped_categories == ["Contract"]
        assert result.errors[0].category == "Contract"

    async def test_opens_and_closes_own_store(self, discovery, fake_store, store_factory):
        fake_store.add_file("Contract", "lease.pdf")

        await discovery.discover("secret-token", ["Contract"])

        assert store_factory.tokens == ["secret-token"]
        assert fake_store.closed

    async def test_reuses_passed_store(self, discovery, fake_store, store_factory):
        fake_store.add_file("Contract", "lease.pdf")

        result = await discovery.discover("token", ["Contract"], store=fake_store)

        assert result.total_count == 1
        assert store_factory.tokens == []
        assert not fake_store.closed

    async def test_empty_category_list_rejected(self, discovery):
        with pytest.raises(ValueError):
            await discovery.discover("token", [])

    async def test_root_folder_is_configurable(self, repository, store_factory, fake_store):
        service = DocumentDiscoveryService(repository, store_factory, root_folder="/Training/")
        fake_store.add_file("Contract", "lease.pdf")

        result = await service.discover("token", ["Contract"])

        assert fake_store.created_folders == ["Training/Contract"]
        assert result.documents[0].folder_path == "Training/Contract"
