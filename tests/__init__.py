"""Tests for feature-orchestrator."""
