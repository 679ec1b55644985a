"""
Incremental Email Clustering Module

This module clusters a stream of email embeddings into density-based,
hierarchical clusters without re-running a batch pass per arrival.

Components:
- oracle: Two-tier distance oracle (coarse shortlist, precise token rescoring)
- hnsw: Approximate neighbor index with snapshot readers
- reachability: Candidate edges, core distances, mutual reachability
- hierarchy: Minimum spanning forest and dendrogram
- condense: Condensation, stability and cluster selection
- engine: Incremental update manager
- emitter: Assignment sinks (memory, JSONL, SQLite)
- snapshot: Checksummed snapshot persistence
- diagnostics: FAISS exact neighbors and clustering agreement
- models: Pydantic models and point state
"""

__all__ = [
    "condense",
    "diagnostics",
    "emitter",
    "engine",
    "errors",
    "hierarchy",
    "hnsw",
    "metrics",
    "models",
    "oracle",
    "reachability",
    "snapshot",
    "union_find",
]
