"""
Shared — エラー分類 (Error Taxonomy)

各サービスのコマンド/クエリはビジネスルール違反をこの例外で表す。
FastAPI 側ではハンドラが {"error": code, "detail": msg} に変換し、
呼び出し側 (Saga の HTTP クライアント) は同じ例外クラスに戻す。

  NotFound          404  エンティティが存在しない
  InvalidInput      422  必須項目の欠落・不正な値
  InvalidAmount     422  金額が不正 (InvalidInput の一種)
  InvalidState      409  現在のステータスでは許されない操作
  InsufficientStock 409  在庫不足
  Expired           410  予約の有効期限切れ
  UpstreamFailure   502  外部サービス呼び出しの失敗・タイムアウト
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class ServiceError(Exception):
    code = "service_error"
    status_code = 500

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail}


class NotFound(ServiceError):
    code = "not_found"
    status_code = 404


class InvalidInput(ServiceError):
    code = "invalid_input"
    status_code = 422


class InvalidAmount(InvalidInput):
    code = "invalid_amount"


class InvalidState(ServiceError):
    code = "invalid_state"
    status_code = 409


class InsufficientStock(ServiceError):
    code = "insufficient_stock"
    status_code = 409


class Expired(ServiceError):
    code = "expired"
    status_code = 410


class UpstreamFailure(ServiceError):
    code = "upstream_failure"
    status_code = 502


_BY_CODE = {
    cls.code: cls
    for cls in (
        NotFound,
        InvalidInput,
        InvalidAmount,
        InvalidState,
        InsufficientStock,
        Expired,
        UpstreamFailure,
    )
}


def from_payload(payload: dict, status_code: int) -> ServiceError:
    """レスポンスボディ {"error", "detail"} から例外を復元する。"""
    cls = _BY_CODE.get(payload.get("error", ""))
    detail = str(payload.get("detail", ""))
    if cls is None:
        return UpstreamFailure(f"HTTP {status_code}: {detail}")
    return cls(detail)


async def _handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _handle_service_error)
