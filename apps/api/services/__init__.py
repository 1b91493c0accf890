"""Service layer for the FormulaFlow API (LLM flows, ingestion, history, payments).

Routers in ``apps.api.main`` stay thin and delegate to these modules.
"""
