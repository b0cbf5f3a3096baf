"""Service layer helpers (settings)."""

from .settings import Settings, SettingsStore, clamp_iterations, load_env_file

__all__ = ["Settings", "SettingsStore", "clamp_iterations", "load_env_file"]
