"""
obit-pipeline - LLM-assisted rewrite and fact-audit of obituary records.

Packages:
- obit_pipeline.core: errors, logging, settings, storage, advisory locks
- obit_pipeline.execution: shared token budget, batch pacing
- obit_pipeline.llm: provider protocol, HTTP provider, budgeted client
- obit_pipeline.pipeline: rewrite stage, idle gate, audit stage
- obit_pipeline.cli: ``obit-pipeline`` command
"""

__version__ = "0.1.0"
