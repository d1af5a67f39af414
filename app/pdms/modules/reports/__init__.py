"""
Reports module: asynchronous CSV reports built from the audit trail and the version store.
"""
