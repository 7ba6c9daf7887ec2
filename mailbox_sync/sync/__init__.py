"""
mailbox_sync.sync - Reconciliation module

History delta application, full resync, count reconciliation, change
broadcasting and the per-account reconciliation engine.
"""
