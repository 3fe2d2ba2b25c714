"""HTTP boundary of a worker: FastAPI application and uvicorn listener."""
from higgs_server.web.app import create_app
from higgs_server.web.listener import HttpListener

__all__ = ["HttpListener", "create_app"]
