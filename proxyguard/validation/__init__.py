"""Upgrade validation: build-info ingestion, version hashing and orchestration."""
