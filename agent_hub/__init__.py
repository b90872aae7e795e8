"""
Agent hub: task routing and web automation components.

This package contains the decision router that picks an executor for a
request, the iterative Playwright web agent, the dispatcher that wires them
together, and the model gateway / content governor used by all of them.
"""
