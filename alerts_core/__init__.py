"""
Alerts Core - rule-driven alert runs over time-series metrics
"""
