"""Shared infrastructure for the whispr services: stores, logging, metrics, retries and LLM access."""
