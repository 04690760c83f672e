"""
circuitchat: client core of the analog circuit-design assistant.

Conversation list, message history, query submission, job polling and
the typing-effect reveal of answers, over the assistant's REST API.
"""

__version__ = "0.3.0"
