"""Core domain package for helpmate.

Core holds the request lifecycle (matching, fulfillment, chat, discovery)
without any storage- or delivery-specific code, keeping the business logic
portable across backends.
"""
