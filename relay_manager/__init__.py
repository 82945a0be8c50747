"""Relay manager: reconcile manually added and cloud-provisioned relay servers."""

__version__ = "0.1.0"
