"""
Bracketed citation handling for generated answers.

Generated answers cite context items inline as [1], [2] or [1, 3]. Before
an answer is returned, citations pointing at the same source are collapsed
onto the first-seen label and the bracket groups in the text are rewritten
to match.
"""

import re
from typing import Dict, List, Optional, Tuple

from memory_mesh.memory.canonicalizer import normalize_url
from memory_mesh.models.schemas import Citation

BRACKET_GROUP = re.compile(r'\[(\d+(?:\s*,\s*\d+)*)\]')
REPEATED_GROUP = re.compile(r'(\[\d+(?:, \d+)*\])(?:\s*,?\s*\1)+')


def extract_citation_order(text: Optional[str]) -> List[int]:
    """
    Labels cited in the text, in order of first appearance.

    Example:
        >>> extract_citation_order("A [2] and B [1, 2] then [3]")
        [2, 1, 3]
    """
    if not text:
        return []

    order: List[int] = []
    seen = set()
    for match in BRACKET_GROUP.finditer(text):
        for part in match.group(1).split(","):
            label = int(part.strip())
            if label not in seen:
                seen.add(label)
                order.append(label)
    return order


def citation_key(citation: Citation) -> str:
    """Identity of a cited source: normalized URL, else memory id."""
    url = normalize_url(citation.url)
    if url and url != "unknown":
        return f"url:{url}"
    return f"memory:{citation.memory_id}"


def _tidy(text: str) -> str:
    text = re.sub(r'[ \t]{2,}', ' ', text)
    text = re.sub(r'\s+([.,;:!?])', r'\1', text)
    return text.strip()


def dedupe_citations(text: str, citations: List[Citation]) -> Tuple[str, List[Citation]]:
    """
    Collapse duplicate citations and rewrite bracket references.

    Citations sharing a canonical URL (or, without a URL, a memory id)
    collapse to the label seen first in the text. Bracket groups are
    remapped, labels with no citation are dropped, groups left empty are
    removed, and runs of identical consecutive groups ("[1] [1]",
    "[1], [1]") collapse to one.

    Args:
        text: Generated answer text
        citations: Citations available to the answer, keyed by label

    Returns:
        Tuple[str, List[Citation]]: Rewritten text and unique citations in
        first-seen order

    Example:
        >>> text, cites = dedupe_citations("X [2]. Y [5].", [c2, c5])  # same URL
        >>> text
        'X [2]. Y [2].'
    """
    by_label: Dict[int, Citation] = {}
    for citation in citations:
        by_label.setdefault(citation.label, citation)

    # Labels in the order the reader meets them
    order = extract_citation_order(text)

    label_map: Dict[int, int] = {}
    first_label_for_key: Dict[str, int] = {}
    unique: List[Citation] = []

    for label in order:
        citation = by_label.get(label)
        if citation is None:
            continue
        key = citation_key(citation)
        if key not in first_label_for_key:
            first_label_for_key[key] = label
            unique.append(citation)
        label_map[label] = first_label_for_key[key]

    def remap(match: re.Match) -> str:
        labels: List[int] = []
        for part in match.group(1).split(","):
            mapped = label_map.get(int(part.strip()))
            if mapped is not None and mapped not in labels:
                labels.append(mapped)
        if not labels:
            return ""
        return "[" + ", ".join(str(label) for label in labels) + "]"

    rewritten = BRACKET_GROUP.sub(remap, text or "")
    rewritten = REPEATED_GROUP.sub(r'\1', rewritten)

    return _tidy(rewritten), unique
