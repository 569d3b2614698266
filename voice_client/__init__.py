"""
Voice client gateway.

Desktop clients push recorded audio; the gateway transcribes it, hands the
transcript plus the session's prior turns to a conversational agent, and
streams the agent's reply back as Server-Sent Events on the same response.

Layers:
- SessionStore / IdleScheduler own session state and idle bookkeeping
- TurnOrchestrator sequences one audio turn into a well-ordered event stream
- The FastAPI router only validates requests and adapts errors to HTTP
"""

__version__ = "0.3.0"
