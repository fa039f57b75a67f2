"""Tender assistant orchestration package."""

from .config import Settings, SupervisorConfig, ToolConfig

__all__ = ["Settings", "SupervisorConfig", "ToolConfig"]
