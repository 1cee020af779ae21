"""APIトークン認証ミドルウェア。"""

import hmac

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """APIトークンを検証するミドルウェア。

    BERTH_API_TOKEN が設定されている場合、すべてのリクエストに
    token クエリパラメータ、または `Authorization: Bearer <token>` ヘッダーを要求する。
    /healthz はヘルスチェック用のため検証をスキップする。
    """

    SKIP_PATHS = {"/healthz"}

    def __init__(self, app: ASGIApp, api_token: str = "") -> None:
        super().__init__(app)
        self.api_token = api_token

    @staticmethod
    def _extract_token(request: Request) -> str:
        token = request.query_params.get("token", "")
        if token:
            return token
        scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
        if scheme.lower() == "bearer":
            return credentials.strip()
        return ""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self.api_token:
            return await call_next(request)

        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        token = self._extract_token(request)
        if not hmac.compare_digest(token.encode(), self.api_token.encode()):
            return JSONResponse({"error": "Invalid or missing token"}, status_code=401)

        return await call_next(request)
