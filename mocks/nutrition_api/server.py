"""
Mock calorie tracker API issuing short-lived JWT access tokens.

Covers the auth endpoints the session client talks to plus one protected
resource. Knobs on the server object let tests force refresh failures,
revoke tokens and answer logins in the legacy ``{"token": ...}`` shape.
"""

import time
import uuid
import jwt
from typing import Dict, Any, Optional, Set, List
from fastapi import FastAPI, HTTPException, Depends
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, Field

from shared.logging import get_logger


class LoginBody(BaseModel):
    email: str
    password: str


class RegisterBody(BaseModel):
    email: str
    password: str = Field(min_length=8)
    first_name: Optional[str] = Field(default=None, alias="firstName")

    model_config = ConfigDict(populate_by_name=True)


class RefreshBody(BaseModel):
    refresh_token: str = Field(alias="refreshToken")


class MealBody(BaseModel):
    name: str
    calories: int = Field(ge=0)


class MockNutritionServer:
    """Mock calorie tracker backend."""

    def __init__(self,
                 secret: str = "mock-signing-secret",
                 access_ttl_seconds: int = 15 * 60,
                 refresh_ttl_seconds: int = 7 * 24 * 3600,
                 rotate_refresh_tokens: bool = True):
        self.logger = get_logger("mock.nutrition_api")
        self.app = FastAPI(title="Mock Nutrition API", version="1.0.0")
        self.secret = secret
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.rotate_refresh_tokens = rotate_refresh_tokens

        # Knobs
        self.legacy_login = False
        self.refresh_failure_status: Optional[int] = None

        # Observations
        self.refresh_calls = 0
        self.logout_calls = 0

        self.users: Dict[str, Dict[str, Any]] = {
            "demo@example.com": {
                "id": "user-1",
                "email": "demo@example.com",
                "password": "password123",
                "firstName": "Demo"
            }
        }
        self.meals: Dict[str, List[Dict[str, Any]]] = {}
        self.active_refresh_tokens: Set[str] = set()
        self.revoked_access_tokens: Set[str] = set()

        self._setup_routes()

    def _setup_routes(self):
        """Set up mock API routes."""

        @self.app.get("/health")
        async def health():
            return {"status": "ok", "service": "mock-nutrition-api"}

        @self.app.post("/api/auth/login")
        async def login(body: LoginBody):
            user = self.users.get(body.email)
            if user is None or user["password"] != body.password:
                return JSONResponse(status_code=401, content={"message": "Invalid email or password"})
            return self._auth_payload(user)

        @self.app.post("/api/auth/register")
        async def register(body: RegisterBody):
            if body.email in self.users:
                return JSONResponse(status_code=409, content={"message": "Email already registered"})
            user = {
                "id": f"user-{len(self.users) + 1}",
                "email": body.email,
                "password": body.password,
                "firstName": body.first_name
            }
            self.users[body.email] = user
            return self._auth_payload(user)

        @self.app.post("/api/auth/refresh")
        async def refresh(body: RefreshBody):
            self.refresh_calls += 1
            if self.refresh_failure_status is not None:
                return JSONResponse(
                    status_code=self.refresh_failure_status,
                    content={"message": "Refresh temporarily unavailable"}
                )

            if body.refresh_token not in self.active_refresh_tokens:
                return JSONResponse(status_code=401, content={"message": "Invalid refresh token"})
            try:
                payload = self._decode(body.refresh_token)
            except jwt.InvalidTokenError:
                self.active_refresh_tokens.discard(body.refresh_token)
                return JSONResponse(status_code=401, content={"message": "Refresh token expired"})

            user_id = payload["sub"]
            response = {"accessToken": self._issue(user_id, self.access_ttl_seconds, "access")}
            if self.rotate_refresh_tokens:
                self.active_refresh_tokens.discard(body.refresh_token)
                response["refreshToken"] = self._issue_refresh(user_id)
            self.logger.info("Issued refreshed tokens", user_id=user_id, rotated=self.rotate_refresh_tokens)
            return response

        @self.app.post("/api/logout")
        async def logout(user_id: str = Depends(self._current_user)):
            self.logout_calls += 1
            return {"message": "Logged out successfully"}

        @self.app.get("/api/meals")
        async def list_meals(user_id: str = Depends(self._current_user)):
            return {"meals": self.meals.get(user_id, [])}

        @self.app.post("/api/meals", status_code=201)
        async def create_meal(body: MealBody, user_id: str = Depends(self._current_user)):
            meal = {"id": uuid.uuid4().hex[:8], "name": body.name, "calories": body.calories}
            self.meals.setdefault(user_id, []).append(meal)
            return meal

    async def _current_user(
        self,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(HTTPBearer(auto_error=False))
    ) -> str:
        if credentials is None:
            raise HTTPException(status_code=401, detail="Missing bearer token")
        token = credentials.credentials
        if token in self.revoked_access_tokens:
            raise HTTPException(status_code=401, detail="Token revoked")
        try:
            payload = self._decode(token)
        except jwt.ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except jwt.InvalidTokenError:
            raise HTTPException(status_code=401, detail="Invalid token")
        if payload.get("type") != "access":
            raise HTTPException(status_code=401, detail="Invalid token type")
        return payload["sub"]

    def _decode(self, token: str) -> Dict[str, Any]:
        return jwt.decode(token, self.secret, algorithms=["HS256"])

    def _issue(self, user_id: str, ttl_seconds: int, token_type: str) -> str:
        now = int(time.time())
        payload = {
            "sub": user_id,
            "iat": now,
            "exp": now + ttl_seconds,
            "type": token_type,
            # Distinct tokens even when issued within the same second
            "jti": uuid.uuid4().hex
        }
        return jwt.encode(payload, self.secret, algorithm="HS256")

    def _issue_refresh(self, user_id: str) -> str:
        token = self._issue(user_id, self.refresh_ttl_seconds, "refresh")
        self.active_refresh_tokens.add(token)
        return token

    def _auth_payload(self, user: Dict[str, Any]) -> Dict[str, Any]:
        public_user = {k: v for k, v in user.items() if k != "password"}
        access_token = self._issue(user["id"], self.access_ttl_seconds, "access")
        if self.legacy_login:
            return {"token": access_token, **public_user}
        return {
            "tokens": {
                "accessToken": access_token,
                "refreshToken": self._issue_refresh(user["id"])
            },
            "user": public_user
        }

    def revoke_access_token(self, token: str):
        """Reject an otherwise unexpired access token from now on."""
        self.revoked_access_tokens.add(token)

    def revoke_refresh_tokens(self):
        """Invalidate every outstanding refresh token."""
        self.active_refresh_tokens.clear()


def create_app(server: Optional[MockNutritionServer] = None):
    """Create mock nutrition API application."""
    server = server or MockNutritionServer()
    return server.app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=3000)
