"""Offline-tolerant desktop companion for the MineTrack operations backend."""

__version__ = "0.1.0"
