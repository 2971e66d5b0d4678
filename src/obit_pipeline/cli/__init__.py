"""
CLI layer for obit-pipeline.

Terminal transport only: argument parsing and output. The stages live in
``obit_pipeline.pipeline``.

Entry point::

    obit-pipeline --help
"""

from obit_pipeline.cli.app import app

__all__ = ["app"]
