"""
Feature modules live under this package.

Each module owns its models, service functions and routes, and reuses the
platform primitives (auth, access policy, audit, storage, DB session).
"""
