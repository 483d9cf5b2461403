"""
Alerts API - REST surface for alert queries, rule listing and manual runs
"""
