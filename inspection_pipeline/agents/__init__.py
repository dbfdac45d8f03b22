"""Agent execution tracking for multi-agent workflow runs."""

from .tracker import AgentExecutionTracker, AgentUpdate, create_retry_attempt

__all__ = ["AgentExecutionTracker", "AgentUpdate", "create_retry_attempt"]
