"""Portfolio synchronization between the local store and the remote repository."""
