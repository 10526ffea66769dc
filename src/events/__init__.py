"""Event log handling.

This module decodes cycle-based event logs, maintains their lightweight
position index and builds the relational index used for queries.
"""
