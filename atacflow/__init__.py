"""ATAC-seq/DNase-seq task graph builder and scheduler."""

__version__ = "0.3.0"
