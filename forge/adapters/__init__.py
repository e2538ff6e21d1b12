"""Format adapters: one per package ecosystem."""

from forge.adapters.base import FormatAdapter
from forge.adapters.node import NodeAdapter
from forge.adapters.python import PythonAdapter

__all__ = ["FormatAdapter", "NodeAdapter", "PythonAdapter"]
