"""
Case analysis pipeline.

Resumable multi-stage conversation analysis with streamed progress.
"""

__version__ = "0.3.0"
