"""Juniper: multi-channel assistant gateway."""
