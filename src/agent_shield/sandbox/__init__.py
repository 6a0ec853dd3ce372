"""
agent-shield sandbox runtime

One disposable, resource-bounded sandbox per execution.
"""

from agent_shield.sandbox.runtime import SandboxHandle, SandboxRuntime

__all__ = ["SandboxHandle", "SandboxRuntime"]
