"""FastAPI backend – settings, session store, progress bus, orchestrator and routes."""
