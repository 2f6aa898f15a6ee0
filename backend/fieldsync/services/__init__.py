"""Reconciliation services: guard, resolver, archive, coordinator and ledger."""
