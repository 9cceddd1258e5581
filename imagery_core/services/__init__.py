"""Imagery acquisition services exposed by the ``imagery_core.services`` package."""
