"""HTTP API exposing the ledger service."""
