"""Publishing pipeline for the packages of a Python monorepo.

Bumps versions, commits and tags the release, builds and uploads the
distributions. Each stage is checkpointed, so a run that fails (typically
during the upload) can be resumed without bumping or committing again.
"""
