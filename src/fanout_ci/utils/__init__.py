"""Filesystem, hashing, and asyncio helpers shared by the pipeline planes."""
