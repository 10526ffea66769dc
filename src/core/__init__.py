"""Shared foundations.

This module groups configuration, constants, errors, logging, typed
models and digest helpers used by every other package.
"""
