"""HTTP routers for the sync status and trigger surface."""
