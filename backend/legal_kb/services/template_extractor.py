"""
Template Extractor — embedding clusters → reusable document templates

Pipeline per category:
  1. Guard: fewer than min_cluster_size documents → 0 templates
  2. Cluster (seed-based, single pass):
       - documents in stable (created_at, id) order
       - representative vector = chunk 0 embedding; documents whose vector is
         missing, unparseable, non-finite, zero-norm or of the wrong dimension
         are excluded (they never seed or join a cluster)
       - each unassigned document seeds a cluster; every later unassigned
         document with cosine(seed, doc) >= threshold joins it
       - clusters smaller than min_cluster_size are dropped
  3. Section structure per member: each heading line plus the long lines
     among the 4 non-empty lines that follow it
  4. Consensus: seed headings, in seed order, that appear (normalized) in
     at least consensus_ratio of the members
  5. Quality = 1 − variance(section counts) / mean(section counts) ∈ [0, 1]
  6. Persist one DocumentTemplate per cluster; a failed insert is logged
     and the remaining clusters are still persisted

Membership is relative to the seed only: two members of one cluster may be
less similar to each other than the threshold.
"""

from __future__ import annotations

import json
import logging
import math
import re
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np

from legal_kb.repositories.training import StoredDocument, TemplateDraft, TrainingRepository
from legal_kb.schemas.training import TemplateSection, TemplateStructure

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Structure heuristics
# ---------------------------------------------------------------------------

MAX_HEADING_CHARS  = 100   # headings are strictly shorter
MIN_PHRASE_CHARS   = 20    # phrase lines are strictly longer
MAX_PHRASES        = 4     # per section

_PUNCT_RE      = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")
_NAME_SEP_RE   = re.compile(r"[\s_\-.]+")


def normalize_heading(heading: str) -> str:
    """Case / punctuation / whitespace-insensitive heading key."""
    return _WHITESPACE_RE.sub(" ", _PUNCT_RE.sub(" ", heading.lower())).strip()


def is_heading(line: str) -> bool:
    return 0 < len(line) < MAX_HEADING_CHARS and line[0].isupper()


def extract_sections(text: str) -> list[TemplateSection]:
    """
    Every heading line opens a section. Its phrases are the lines among the
    next MAX_PHRASES non-empty lines that are longer than MIN_PHRASE_CHARS,
    heading-shaped or not, so a capitalised sentence can be both a phrase
    of the section above it and a heading of its own.
    """
    lines = [stripped for stripped in (raw.strip() for raw in text.splitlines()) if stripped]
    sections: list[TemplateSection] = []
    for index, line in enumerate(lines):
        if not is_heading(line):
            continue
        window = lines[index + 1 : index + 1 + MAX_PHRASES]
        sections.append(TemplateSection(
            heading=line,
            common_phrases=[candidate for candidate in window if len(candidate) > MIN_PHRASE_CHARS],
        ))
    return sections


def quality_score(section_counts: Sequence[int]) -> float:
    if not section_counts:
        return 0.0
    counts = np.asarray(section_counts, dtype=float)
    mean = float(counts.mean())
    if mean == 0:
        return 0.0
    score = 1.0 - float(counts.var()) / mean
    return round(min(1.0, max(0.0, score)), 4)


def template_name(filename: str, category: str) -> str:
    stem = filename.rsplit(".", 1)[0] if "." in filename else filename
    words = _NAME_SEP_RE.sub(" ", stem).strip()
    return f"{(words or category).title()} Template"


def parse_vector(raw: Any, dimensions: int | None = None) -> np.ndarray | None:
    """
    Coerce a stored embedding (list, ndarray or pgvector text "[...]") into a
    unit-length float vector. Returns None for anything unusable.
    """
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    try:
        vector = np.asarray(raw, dtype=float)
    except (TypeError, ValueError):
        return None

    if vector.ndim != 1 or vector.size == 0:
        return None
    if dimensions is not None and vector.size != dimensions:
        return None
    if not np.all(np.isfinite(vector)):
        return None
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return None
    return vector / norm


# ---------------------------------------------------------------------------
# Cluster
# ---------------------------------------------------------------------------

@dataclass
class Cluster:
    seed:         StoredDocument
    members:      list[StoredDocument] = field(default_factory=list)   # seed first
    similarities: list[float]          = field(default_factory=list)   # to the seed, parallel to members

    @property
    def size(self) -> int:
        return len(self.members)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class TemplateExtractor:
    """
    Usage:
        extractor = TemplateExtractor.from_settings(repository)
        created   = await extractor.extract_templates("Contract")
    """

    def __init__(
        self,
        repository:           TrainingRepository,
        similarity_threshold: float = 0.85,
        min_cluster_size:     int   = 3,
        consensus_ratio:      float = 0.7,
        dimensions:           int | None = None,
    ) -> None:
        self._repository       = repository
        self._threshold        = similarity_threshold
        self._min_cluster_size = min_cluster_size
        self._consensus_ratio  = consensus_ratio
        self._dimensions       = dimensions

    @classmethod
    def from_settings(cls, repository: TrainingRepository) -> "TemplateExtractor":
        from legal_kb.core.config import settings

        return cls(
            repository,
            similarity_threshold=settings.template_similarity_threshold,
            min_cluster_size=settings.template_min_cluster_size,
            consensus_ratio=settings.template_consensus_ratio,
            dimensions=settings.embedding_dimensions,
        )

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def extract_templates(self, category: str) -> int:
        total = await self._repository.count_documents(category)
        if total < self._min_cluster_size:
            logger.info(
                "Template extraction skipped | category=%s documents=%d min=%d",
                category, total, self._min_cluster_size,
            )
            return 0

        documents = await self._repository.list_documents(category, with_vectors=True)
        clusters = self.cluster(documents)

        created = 0
        for cluster in clusters:
            draft = self.build_template(category, cluster)
            try:
                template_id = await self._repository.save_template(draft)
            except Exception as exc:
                logger.exception(
                    "Template not saved | category=%s seed=%s error=%s",
                    category, cluster.seed.id, exc,
                )
                continue
            created += 1
            logger.info(
                "Template saved | category=%s template=%s name=%r members=%d sections=%d quality=%.3f",
                category, template_id, draft.name, cluster.size,
                len(draft.structure.sections), draft.quality_score,
            )

        logger.info(
            "Template extraction done | category=%s documents=%d clusters=%d created=%d",
            category, len(documents), len(clusters), created,
        )
        return created

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    def cluster(self, documents: Sequence[StoredDocument]) -> list[Cluster]:
        ordered = sorted(documents, key=lambda doc: (doc.created_at, doc.id))

        eligible: list[tuple[StoredDocument, np.ndarray]] = []
        dimensions = self._dimensions
        for doc in ordered:
            vector = parse_vector(doc.representative_vector, dimensions)
            if vector is None:
                logger.debug("Excluded from clustering | doc=%s reason=unusable vector", doc.id)
                continue
            dimensions = dimensions or vector.size
            eligible.append((doc, vector))

        assigned: set[uuid.UUID] = set()
        clusters: list[Cluster] = []
        for index, (seed, seed_vector) in enumerate(eligible):
            if seed.id in assigned:
                continue
            assigned.add(seed.id)
            cluster = Cluster(seed=seed, members=[seed], similarities=[1.0])

            for candidate, vector in eligible[index + 1 :]:
                if candidate.id in assigned:
                    continue
                similarity = float(np.dot(seed_vector, vector))
                if similarity >= self._threshold:
                    assigned.add(candidate.id)
                    cluster.members.append(candidate)
                    cluster.similarities.append(similarity)

            if cluster.size >= self._min_cluster_size:
                clusters.append(cluster)

        return clusters

    # ------------------------------------------------------------------
    # Structure consensus
    # ------------------------------------------------------------------

    def build_template(self, category: str, cluster: Cluster) -> TemplateDraft:
        member_sections = [extract_sections(doc.text_content or "") for doc in cluster.members]
        structure = self.consensus(member_sections)
        return TemplateDraft(
            category=category,
            name=template_name(cluster.seed.filename, category),
            base_document_id=cluster.seed.id,
            structure=structure,
            member_ids=[doc.id for doc in cluster.members],
            quality_score=quality_score([len(sections) for sections in member_sections]),
        )

    def consensus(self, member_sections: Sequence[list[TemplateSection]]) -> TemplateStructure:
        """member_sections[0] belongs to the seed and fixes the heading order."""
        if not member_sections:
            return TemplateStructure()

        required = math.ceil(self._consensus_ratio * len(member_sections) - 1e-9)

        presence: Counter[str] = Counter()
        phrase_votes: dict[str, Counter[str]] = {}
        for sections in member_sections:
            keys = set()
            for section in sections:
                key = normalize_heading(section.heading)
                keys.add(key)
                phrase_votes.setdefault(key, Counter()).update(section.common_phrases)
            presence.update(keys)

        kept: list[TemplateSection] = []
        emitted: set[str] = set()
        for section in member_sections[0]:
            key = normalize_heading(section.heading)
            if not key or key in emitted or presence[key] < required:
                continue
            emitted.add(key)
            kept.append(TemplateSection(
                heading=section.heading,
                common_phrases=self._common_phrases(section, phrase_votes[key]),
            ))
        return TemplateStructure(sections=kept)

    @staticmethod
    def _common_phrases(seed_section: TemplateSection, votes: Counter[str]) -> list[str]:
        """Most frequent phrases under a heading across members; seed phrases win ties."""
        seed_rank = {phrase: index for index, phrase in enumerate(seed_section.common_phrases)}
        ranked = sorted(
            votes,
            key=lambda phrase: (-votes[phrase], seed_rank.get(phrase, len(seed_rank)), phrase),
        )
        return ranked[:MAX_PHRASES]
