"""
Shared clients built at startup and handed to routes through Depends.

main.py stores them on app.state; tests swap them with dependency_overrides.
"""
from fastapi import Request

from services.analysis_service import ContractAnalyzer
from services.blob_service import BlobStore


def get_analyzer(request: Request) -> ContractAnalyzer:
    return request.app.state.analyzer


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store
