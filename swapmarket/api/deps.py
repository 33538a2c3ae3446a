from fastapi import Header, HTTPException, Request

from swapmarket.wiring import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    # set by the upstream auth gateway
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id")
    return x_user_id.strip()
