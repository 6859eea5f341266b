# src/vaultgate/store/__init__.py
"""
Vaultgate persistence.

  - store: GateStore protocol + record types
  - store_memory: in-process backend for tests and embedding
  - store_sqlite: durable backend on a single SQLite file
"""
