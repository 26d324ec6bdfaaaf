"""Deal governance module -- evidence, risk, close plans, enforcement, proof packs.

Provides the closed enums and Pydantic schemas, SQLAlchemy models,
GovernanceRepository for async persistence, and the five services: the
Evidence Ledger, the Risk Scorer, the Close-Plan Generator, the Enforcement
Gate, and the Proof Pack snapshot service.
"""
