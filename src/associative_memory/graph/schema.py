"""
Graph schema for the memory association graph.

Defines the Cypher schema for FalkorDB. Schema is applied idempotently on startup.

Node Labels:
    :Memory      - One node per memory entry (keyed by entry_id)

Relationship Types:
    :ASSOCIATED  - Weighted, logically undirected association edge. Stored once
                   per pair, directed from the lexically smaller entry_id to the
                   larger one so MERGE always finds the existing edge.

Indices:
    Memory(entry_id) - Exact-match lookup for memory nodes
"""

ASSOCIATION_TYPE = "ASSOCIATED"

SCHEMA_STATEMENTS: list[str] = [
    "CREATE INDEX IF NOT EXISTS FOR (m:Memory) ON (m.entry_id)",
]
