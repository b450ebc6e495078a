"""CSV seed loading and XLSX coverage export."""

from .reader import load_seed
from .xlsx import render_coverage_xlsx

__all__ = ["load_seed", "render_coverage_xlsx"]
