"""
FixelStats: fixel-based analysis of diffusion MRI measures.

A pip-installable Python tool for whole-brain fixel-based statistics,
using connectivity-based fixel enhancement (CFE) derived from
tractography and non-parametric permutation testing with family-wise
error control.
"""

__version__ = "0.1.0"
__author__ = "FixelStats Contributors"

from fixelstats.core.data_loader import FixelDataLoader, FixelTemplate
from fixelstats.core.design_matrix import DesignMatrixBuilder
from fixelstats.core.connectivity import ConnectivityBuilder, normalize_connectivity
from fixelstats.core.glm import GLMTTestFixed, GLMTTestVariable
from fixelstats.core.cfe import CFEEnhancer
from fixelstats.pipeline import FixelCFEPipeline

__all__ = [
    "FixelDataLoader",
    "FixelTemplate",
    "DesignMatrixBuilder",
    "ConnectivityBuilder",
    "normalize_connectivity",
    "GLMTTestFixed",
    "GLMTTestVariable",
    "CFEEnhancer",
    "FixelCFEPipeline",
    "__version__",
]
