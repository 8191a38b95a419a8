"""Tools to index, reorganize and sample Crossref JSONL.gz data files."""

__version__ = "1.1.0"

__all__ = [
    "common",
    "indexer",
    "organizer",
    "organizer_filters",
    "organizer_writers",
    "sampler",
]