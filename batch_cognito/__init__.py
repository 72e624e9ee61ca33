"""batch-cognito: bulk Cognito group membership by email.

Snapshots a user pool into a local ``username,email`` index with pagination
and throttling backoff, then resolves emails through that index to add or
remove users from groups with bounded concurrency.
"""

__version__ = "0.1.0"
