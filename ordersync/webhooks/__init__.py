"""Webhook inbound system.

Receives order lifecycle webhooks from the commerce platform.
Each webhook is validated, deduplicated by webhook id and queued for
asynchronous processing.
"""
