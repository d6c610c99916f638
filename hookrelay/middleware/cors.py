"""
CORS for the management API.

The trigger endpoint answers its own preflights with a fixed, permissive
header set, so the middleware only applies under `path_prefix`.
"""
from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send


class PrefixCORSMiddleware(CORSMiddleware):
    """Starlette's CORSMiddleware, limited to paths under path_prefix."""

    def __init__(self, app: ASGIApp, path_prefix: str = "/api", **kwargs):
        super().__init__(app, **kwargs)
        self.path_prefix = path_prefix.rstrip("/")

    def applies_to(self, path: str) -> bool:
        return path == self.path_prefix or path.startswith(self.path_prefix + "/")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and not self.applies_to(scope["path"]):
            await self.app(scope, receive, send)
            return
        await super().__call__(scope, receive, send)
