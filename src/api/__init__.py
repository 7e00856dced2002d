"""REST adapter for the review engine."""

from aiohttp import web

ctx_key = web.AppKey("ctx", dict)
api_key_key = web.AppKey("api_key", str)
