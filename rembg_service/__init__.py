"""
Background removal service package.

Exposes reusable primitives for provisioning models and ONNX Runtime builds,
selecting the inference backend, running the segmentation pipeline, and
serving the FastAPI application.
"""

__version__ = "0.1.0"
