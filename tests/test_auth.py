import pytest
import threading
from datetime import timedelta
from unittest.mock import patch
from fastapi import HTTPException
from fastapi.testclient import TestClient
from jose import jwt

from auth import (
    UserService,
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)
from exceptions import InvalidCredentialsError, UserAlreadyExistsError
from main import app
from repositories import InMemoryUserRepository, reset_repositories

client = TestClient(app)


@pytest.fixture(autouse=True)
def reset_state():
    reset_repositories()


class TestPasswordHashing:
    def test_hash_and_verify(self):
        hashed = hash_password("correct horse")

        assert hashed != "correct horse"
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)

    def test_verify_against_garbage_hash(self):
        assert not verify_password("anything", "not-a-bcrypt-hash")


class TestTokens:
    def test_round_trip(self):
        token = create_access_token("alice")

        assert decode_access_token(token) == "alice"

    def test_expired_token(self):
        token = create_access_token("alice", expires_delta=timedelta(seconds=-1))

        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(token)
        assert exc_info.value.status_code == 401

    def test_token_signed_with_another_key(self):
        token = jwt.encode({"sub": "alice"}, "some-other-secret", algorithm="HS256")

        with pytest.raises(HTTPException):
            decode_access_token(token)


class TestUserService:
    @pytest.mark.asyncio
    async def test_register_and_authenticate(self):
        service = UserService(InMemoryUserRepository())

        user = await service.register("alice", "password123", "alice@example.com")

        assert user.id == 1
        assert user.password_hash != "password123"
        assert await service.authenticate("alice", "password123") == user

    @pytest.mark.asyncio
    async def test_bcrypt_runs_off_the_event_loop(self):
        loop_thread = threading.get_ident()
        threads = []

        def recording_hash(password):
            threads.append(threading.get_ident())
            return hash_password(password)

        def recording_verify(password, hashed):
            threads.append(threading.get_ident())
            return verify_password(password, hashed)

        service = UserService(InMemoryUserRepository())
        with patch("auth.hash_password", side_effect=recording_hash), \
                patch("auth.verify_password", side_effect=recording_verify):
            await service.register("alice", "password123")
            await service.authenticate("alice", "password123")

        assert len(threads) == 2
        assert loop_thread not in threads

    @pytest.mark.asyncio
    async def test_duplicate_username(self):
        service = UserService(InMemoryUserRepository())
        await service.register("alice", "password123")

        with pytest.raises(UserAlreadyExistsError):
            await service.register("ALICE", "another-password")

    @pytest.mark.asyncio
    async def test_authenticate_failures(self):
        service = UserService(InMemoryUserRepository())
        await service.register("alice", "password123")

        with pytest.raises(InvalidCredentialsError):
            await service.authenticate("alice", "wrong-password")
        with pytest.raises(InvalidCredentialsError):
            await service.authenticate("bob", "password123")


class TestAuthEndpoints:
    """Test registration and login over HTTP."""

    def test_register_success(self):
        response = client.post("/api/register", json={
            "username": "testuser",
            "password": "password123",
            "email": "test@example.com"
        })

        assert response.status_code == 201
        assert response.json() == {"message": "User registered successfully"}

    def test_register_duplicate_username(self):
        payload = {"username": "testuser", "password": "password123"}
        client.post("/api/register", json=payload)

        response = client.post("/api/register", json=payload)

        assert response.status_code == 400
        assert response.json()["error_code"] == "USER_ALREADY_EXISTS"

    @pytest.mark.parametrize("payload", [
        {"username": "ab", "password": "password123"},
        {"username": "testuser", "password": "short"},
        {"username": "test user", "password": "password123"},
        {"username": "testuser", "password": "password123", "email": "not-an-email"},
        {"username": "testuser", "password": "é" * 40},
    ])
    def test_register_validation(self, payload):
        response = client.post("/api/register", json=payload)

        assert response.status_code == 422

    def test_login_returns_token(self):
        client.post("/api/register", json={"username": "testuser", "password": "password123"})

        response = client.post("/api/login", json={"username": "testuser", "password": "password123"})

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert decode_access_token(data["token"]) == "testuser"

    def test_login_invalid_credentials(self):
        client.post("/api/register", json={"username": "testuser", "password": "password123"})

        response = client.post("/api/login", json={"username": "testuser", "password": "wrong-password"})

        assert response.status_code == 401
        assert response.json()["error_code"] == "INVALID_CREDENTIALS"

    def test_token_of_unknown_user_is_rejected(self):
        token = create_access_token("ghost")

        response = client.get("/api/account/acc_001", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
