from datetime import datetime, timedelta, timezone

import jwt
import pytest

from core import config as core_config
from security import jwt as jwt_utils


def _token(**claims):
    payload = {"exp": datetime.now(timezone.utc) + timedelta(minutes=5), **claims}
    return jwt.encode(payload, core_config.settings.JWT_SECRET, algorithm=core_config.settings.JWT_ALG)


class TestTokens:
    def test_access_token_names_user(self):
        assert jwt_utils.user_id_from_token(jwt_utils.create_access_token("42")) == 42

    def test_extra_claims_cannot_override_type(self):
        token = jwt_utils.create_access_token("42", {"type": "refresh", "role": "admin"})
        payload = jwt_utils.decode_access(token)
        assert payload["type"] == "access"
        assert payload["role"] == "admin"

    def test_other_token_types_rejected(self):
        with pytest.raises(jwt.InvalidTokenError):
            jwt_utils.decode_access(_token(sub="42", type="refresh"))

    def test_non_numeric_subject_rejected(self):
        with pytest.raises(jwt.InvalidTokenError):
            jwt_utils.user_id_from_token(_token(sub="someone", type="access"))

    def test_expired_token_rejected(self):
        expired = jwt.encode(
            {"sub": "42", "type": "access", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
            core_config.settings.JWT_SECRET,
            algorithm=core_config.settings.JWT_ALG,
        )
        with pytest.raises(jwt.ExpiredSignatureError):
            jwt_utils.decode_access(expired)


class TestRouteAuth:
    def test_missing_token(self, client):
        assert client.get("/orders").status_code == 401

    def test_garbage_token(self, client):
        assert client.get("/orders", headers={"Authorization": "Bearer not-a-token"}).status_code == 401

    def test_unknown_user(self, client):
        headers = {"Authorization": f"Bearer {jwt_utils.create_access_token('9999')}"}
        assert client.get("/orders", headers=headers).status_code == 401

    def test_inactive_user(self, client, db, user, auth_headers):
        user.is_active = False
        db.commit()
        assert client.get("/orders", headers=auth_headers).status_code == 401

    def test_admin_only_route(self, client, auth_headers, admin_headers):
        assert client.get("/payments/methods/credit_card/config", headers=auth_headers).status_code == 403
        resp = client.get("/payments/methods/credit_card/config", headers=admin_headers)
        assert resp.status_code == 200
        assert "enabled" in resp.json()["fields"]
