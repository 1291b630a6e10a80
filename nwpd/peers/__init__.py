"""Peer registry fed by the discovery listener."""

from .registry import PeerEntry, PeerRegistry
