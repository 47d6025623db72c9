"""External collaborators – git/GitHub repository manager and the audit ledger."""
