"""Test package for llming-connect."""
