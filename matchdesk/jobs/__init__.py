"""Run ledger for pipeline and sync jobs."""
