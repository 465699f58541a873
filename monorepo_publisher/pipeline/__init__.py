"""Resumable, checkpointed stage pipelines.

This package provides:
- A single-slot checkpoint store with atomic writes
- The work unit / stage contract threaded through a pipeline
- The protocol a pipeline implements to validate and restore checkpoints
- A runner that executes stages in order and checkpoints after each one

A run that fails partway leaves the last good checkpoint on disk: run the
same command again with --resume to continue from the failed stage.
"""
