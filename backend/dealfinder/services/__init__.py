"""Deal detection, history, caching, quota and upstream search services."""
