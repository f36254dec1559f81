"""
Reward pipeline services: identity resolution, reward configuration and
evaluation, the ledger, webhook ingestion, settlement and notifications.
"""
