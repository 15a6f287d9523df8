from contextvars import ContextVar, Token

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
_user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)
# Set for the duration of a dispatcher tick so every entry log carries it.
_claim_token_ctx: ContextVar[str | None] = ContextVar("claim_token", default=None)


def set_request_id(request_id: str | None) -> Token:
    return _request_id_ctx.set(request_id)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def reset_request_id(token: Token) -> None:
    _request_id_ctx.reset(token)


def set_user_id(user_id: str | None) -> Token:
    return _user_id_ctx.set(user_id)


def get_user_id() -> str | None:
    return _user_id_ctx.get()


def reset_user_id(token: Token) -> None:
    _user_id_ctx.reset(token)


def set_claim_token(claim_token: str | None) -> Token:
    return _claim_token_ctx.set(claim_token)


def get_claim_token() -> str | None:
    return _claim_token_ctx.get()


def reset_claim_token(token: Token) -> None:
    _claim_token_ctx.reset(token)


def log_context() -> dict[str, str]:
    values = {
        "request_id": get_request_id(),
        "user_id": get_user_id(),
        "claim_token": get_claim_token(),
    }
    return {key: value for key, value in values.items() if value is not None}
