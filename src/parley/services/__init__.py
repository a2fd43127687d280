"""Negotiation engine, provider adapter, event transport and session control."""
