"""Sentinel-framed file operations (upload, download, list, delete)."""

from .transfer import FileTransfer, format_memory_report

__all__ = ["FileTransfer", "format_memory_report"]
