import jwt
from datetime import datetime, timedelta, timezone
from app.core.config import settings


def generate_test_jwt(user_id="farmer-1", expires_in=timedelta(hours=1), secret=None):
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "exp": now + expires_in,
        "iat": now,
    }
    token = jwt.encode(payload, secret or settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token


def auth_headers(user_id="farmer-1"):
    return {"Authorization": f"Bearer {generate_test_jwt(user_id)}"}
