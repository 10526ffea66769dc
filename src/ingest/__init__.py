"""Raw log ingestion.

This module turns raw log directories into normalized datasets.
It demultiplexes stream logs and copies event and auxiliary files.
"""
