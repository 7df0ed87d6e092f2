"""
Adapter pattern implementations for the worker's external collaborators.

This module provides abstract base classes and concrete implementations
for file storage (local disk, S3), the metadata store (Postgres,
in-memory) and the chapter status bridge.
"""

from .base import FileStorageAdapter, MetadataStoreAdapter, ChapterStatusBridge
from .local_adapter import LocalFileStorageAdapter
from .memory_adapter import InMemoryMetadataStore, InMemoryChapterStatusBridge
from .postgres_adapter import PostgresMetadataStoreAdapter, PostgresChapterStatusBridge
from .s3_adapter import S3FileStorageAdapter

__all__ = [
    'FileStorageAdapter',
    'MetadataStoreAdapter',
    'ChapterStatusBridge',
    'LocalFileStorageAdapter',
    'InMemoryMetadataStore',
    'InMemoryChapterStatusBridge',
    'PostgresMetadataStoreAdapter',
    'PostgresChapterStatusBridge',
    'S3FileStorageAdapter',
]
