"""Test package for groupchat."""
