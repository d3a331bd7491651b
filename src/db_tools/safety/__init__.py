"""Risk classification, shadow validation and dry runs.

Submodules are imported directly to keep backend imports acyclic:

    from db_tools.safety.operations import RiskLevel, risk_for
    from db_tools.safety.pipeline import SafetyPipeline
"""
