"""Stream log file format.

This module reads and writes the block-framed stream log format, its
per-stream index files and their zstd-compressed variants.
"""
