"""
fieldkit - Remote tool catalog for field machines

Fetches a central manifest of maintenance tools, caches their payloads
locally and runs them as supervised child processes.
"""

__version__ = "0.1.0"

# Re-export core models for convenience
from fieldkit.core.catalog.engine import CatalogEngine
from fieldkit.core.catalog.models import ToolState
from fieldkit.core.config.models import FieldkitConfig

__all__ = ["CatalogEngine", "FieldkitConfig", "ToolState", "__version__"]
