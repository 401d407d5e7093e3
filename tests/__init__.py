"""
Test Suite for Memory Mesh

- unit/: canonicalization, dedup, relations, graph, queue, worker and services
- integration/: submit, drain and query flows through MemoryService
- api/: FastAPI routes exercised with TestClient

Fixtures in conftest.py run against in-memory SQLite with a FakeProvider
standing in for the language model and embedding backends.
"""
