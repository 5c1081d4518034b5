from realtime_chat.utils.security import create_access_token


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def ws_url(user_id: str) -> str:
    return f"/ws?token={create_access_token(user_id)}"
