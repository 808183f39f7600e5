"""
QA Lifecycle Hub
Blueprint registry.
"""
