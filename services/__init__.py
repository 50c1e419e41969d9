"""
Supporting services for the verification pipeline.

This package provides:
- Reference photo loading (URL or local file)
- Per-photo face descriptor extraction for the descriptor cache
"""

__all__ = [
	'descriptor_builder',
]

# Tránh import nặng (OpenCV, requests) ngay khi package được import.
# Các module cụ thể sẽ được import tường minh ở nơi cần dùng.
