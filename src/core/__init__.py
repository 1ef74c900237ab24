"""Core domain package for hintbot.

Core contains the conversation state machine, template routing, the pipeline
cache and the session orchestrator without any Telegram, HTTP or
storage-specific code, keeping the tutoring logic portable.
"""
