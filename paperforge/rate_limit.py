"""Shared slowapi limiter for LLM-bound endpoints."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from paperforge.config import settings

limiter = Limiter(key_func=get_remote_address)

# Decorator applied to every endpoint that calls the model
llm_rate_limit = limiter.limit(settings.rate_limit)
