"""Inference client, Harmony codec and tool orchestration."""

from .client import ApproxByteCounter, ClientSettings, InferenceClient, TokenCounterRegistry

__all__ = ["InferenceClient", "ClientSettings", "TokenCounterRegistry", "ApproxByteCounter"]
