"""Test doubles for the ledger and a wired settlement stack."""
