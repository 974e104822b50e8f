"""Tests for lifeos-orchestrator."""
