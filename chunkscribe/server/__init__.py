"""HTTP API: the FastAPI app and its request/response models."""
