"""Verification call pipeline and its provider clients."""

from heatline.calls.pipeline import CallPipeline
from heatline.calls.resilience import call_with_fallback, is_retryable_error
from heatline.calls.transcript import extract_temperature_from_transcript

__all__ = ["CallPipeline", "call_with_fallback", "extract_temperature_from_transcript", "is_retryable_error"]
