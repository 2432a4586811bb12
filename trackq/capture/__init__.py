"""Capture - session lifecycle and the serialized capture/categorize loop"""

from __future__ import annotations

from trackq.capture.service import CapturedFrame, CaptureService, CaptureSource

__all__ = ["CaptureService", "CaptureSource", "CapturedFrame"]
