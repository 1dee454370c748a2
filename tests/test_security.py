from watchtogether.security import hash_password, sanitize_input, verify_password
from watchtogether.utils.code_generator import ALPHABET, generate_code


def test_sanitize_input_escapes_and_truncates():
    assert sanitize_input("<b>hi</b>") == "&lt;b&gt;hi&lt;/b&gt;"
    assert sanitize_input("a\x00b") == "ab"
    assert sanitize_input("line\tone\nline two\x07") == "line\tone\nline two"
    assert sanitize_input("x" * 20, max_length=5) == "xxxxx"
    assert sanitize_input("") == ""


def test_password_hash_roundtrip():
    stored = hash_password("popcorn")

    assert stored.startswith("$2b$")
    assert "popcorn" not in stored
    assert verify_password("popcorn", stored)
    assert not verify_password("wrong", stored)
    assert not verify_password(None, stored)


def test_same_password_gets_different_salts():
    assert hash_password("popcorn") != hash_password("popcorn")


def test_room_without_password_accepts_anyone():
    assert verify_password(None, None)
    assert verify_password("anything", "")


def test_malformed_hash_is_rejected():
    assert not verify_password("popcorn", "not-a-hash")


def test_generate_code_format():
    code = generate_code()
    left, right = code.split("-")
    assert len(left) == len(right) == 3
    assert all(c in ALPHABET for c in left + right)
