"""Room metadata, membership and access control."""
