"""Phase engine and the services it coordinates."""
