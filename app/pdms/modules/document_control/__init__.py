"""
Document Control module: version store, drafts and merge-request approvals.

- Each document has exactly one official version once it has any version
- Drafts branch from a version and are private to their creator for writes
- An approved merge request promotes its draft to the next official version
- Every transition is recorded to the append-only audit trail
"""
