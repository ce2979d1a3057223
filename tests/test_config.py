from __future__ import annotations

import os

import pytest
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat

from brit.config import DAY_MS, load_matcher_config, load_payer_config, normalize_matcher_url
from brit.crypto.keys import public_key_bytes
from brit.testing.keytools import deterministic_x25519_keypair


@pytest.mark.parametrize(
    "url,allow,expected",
    [
        ("https://matcher.example/brit/", False, "https://matcher.example/brit"),
        ("https://matcher.example:8443/brit", False, "https://matcher.example:8443/brit"),
        ("http://localhost:9090/brit", True, "http://localhost:9090/brit"),
        ("http://127.0.0.1:9090/brit", True, "http://127.0.0.1:9090/brit"),
    ],
)
def test_normalize_matcher_url_accepts(url, allow, expected):
    assert normalize_matcher_url(url, allow_insecure_localhost_urls=allow) == expected


@pytest.mark.parametrize(
    "url,allow",
    [
        ("", False),
        ("http://localhost:9090/brit", False),
        ("http://matcher.example/brit", True),
        ("https://matcher.example/brit?payer=1", False),
        ("https://matcher.example/brit#frag", False),
        ("ftp://matcher.example/brit", False),
        ("https:///brit", False),
    ],
)
def test_normalize_matcher_url_rejects(url, allow):
    with pytest.raises(ValueError):
        normalize_matcher_url(url, allow_insecure_localhost_urls=allow)


def test_load_payer_config_from_env(monkeypatch):
    pub_hex, _sk = deterministic_x25519_keypair(label="matcher-cfg")
    monkeypatch.setenv("BRIT_MATCHER_URL", "http://127.0.0.1:9090/brit")
    monkeypatch.setenv("BRIT_MODE", "dev")
    monkeypatch.delenv("BRIT_ALLOW_INSECURE_LOCALHOST", raising=False)
    monkeypatch.delenv("BRIT_MATCHER_PUBLIC_KEY_FILE", raising=False)
    monkeypatch.setenv("BRIT_MATCHER_PUBLIC_KEY", pub_hex)
    monkeypatch.setenv("BRIT_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("BRIT_NEXT_SEND_LOWER", "40")
    monkeypatch.setenv("BRIT_NEXT_SEND_UPPER", "10")
    monkeypatch.setenv("BRIT_BACKOFF_BASE_MS", "not-a-number")

    cfg = load_payer_config()
    assert cfg.matcher_url == "http://127.0.0.1:9090/brit"
    assert public_key_bytes(cfg.matcher_public_key).hex() == pub_hex
    assert cfg.max_attempts == 5
    assert cfg.next_send_lower == 40
    assert cfg.next_send_upper == 40
    assert cfg.backoff_base_ms == 500


def test_load_payer_config_requires_key(monkeypatch):
    monkeypatch.setenv("BRIT_MATCHER_URL", "https://matcher.example/brit")
    monkeypatch.delenv("BRIT_MATCHER_PUBLIC_KEY", raising=False)
    monkeypatch.delenv("BRIT_MATCHER_PUBLIC_KEY_FILE", raising=False)

    with pytest.raises(RuntimeError):
        load_payer_config()


def test_prod_mode_refuses_plain_http(monkeypatch):
    pub_hex, _sk = deterministic_x25519_keypair(label="matcher-cfg")
    monkeypatch.setenv("BRIT_MATCHER_URL", "http://localhost/brit")
    monkeypatch.setenv("BRIT_MODE", "prod")
    monkeypatch.delenv("BRIT_ALLOW_INSECURE_LOCALHOST", raising=False)
    monkeypatch.setenv("BRIT_MATCHER_PUBLIC_KEY", pub_hex)

    with pytest.raises(ValueError):
        load_payer_config()


def test_load_matcher_config_from_env(monkeypatch, tmp_path):
    _pub_hex, sk = deterministic_x25519_keypair(label="matcher-cfg")

    key_file = tmp_path / "matcher.pem"
    key_file.write_bytes(sk.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()))

    monkeypatch.setenv("BRIT_MATCHER_PRIVATE_KEY_FILE", str(key_file))
    monkeypatch.setenv("BRIT_ENDPOINT_PATH", "exchange/")
    monkeypatch.setenv("BRIT_COHORT_SIZE", "0")
    monkeypatch.delenv("BRIT_COHORT_ROTATION_MS", raising=False)
    monkeypatch.delenv("BRIT_MATCHER_DB_PATH", raising=False)

    cfg = load_matcher_config()
    assert cfg.endpoint_path == "/exchange"
    assert cfg.cohort_size == 1
    assert cfg.rotation_ms == DAY_MS
    assert cfg.db_path is None
    assert public_key_bytes(cfg.private_key.public_key()) == public_key_bytes(sk.public_key())


def test_load_matcher_config_requires_key(monkeypatch):
    monkeypatch.delenv("BRIT_MATCHER_PRIVATE_KEY", raising=False)
    monkeypatch.delenv("BRIT_MATCHER_PRIVATE_KEY_FILE", raising=False)

    with pytest.raises(RuntimeError):
        load_matcher_config()


def test_dotenv_is_loaded_once_without_overriding(monkeypatch, tmp_path):
    from brit import env

    monkeypatch.setattr(env, "_attempted", False)
    monkeypatch.setattr(env, "_loaded_from", None)
    monkeypatch.setenv("BRIT_COHORT_SIZE", "7")
    # setenv first so teardown restores "unset" after the dotenv load
    monkeypatch.setenv("BRIT_ENDPOINT_PATH", "placeholder")
    monkeypatch.delenv("BRIT_ENDPOINT_PATH")

    dotenv = tmp_path / "matcher.env"
    dotenv.write_text("BRIT_COHORT_SIZE=2\nBRIT_ENDPOINT_PATH=/from-dotenv\n", encoding="utf-8")

    assert env.load_dotenv_if_present(str(dotenv)) == dotenv
    assert env.load_dotenv_if_present(str(tmp_path / "other.env")) == dotenv

    assert os.environ["BRIT_COHORT_SIZE"] == "7"
    assert os.environ["BRIT_ENDPOINT_PATH"] == "/from-dotenv"
