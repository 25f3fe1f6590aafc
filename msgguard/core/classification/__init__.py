"""
Deterministic, rule-based message classification.
"""
