"""
SynthCall - webhook service for synthetic two-party AI phone conversations.
"""
