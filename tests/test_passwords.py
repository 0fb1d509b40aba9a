from vulnz.security.passwords import generate_token, hash_password, tokens_match, verify_password


def test_hash_and_verify():
    encoded = hash_password("Secret123")
    assert encoded.startswith("scrypt$")
    assert verify_password("Secret123", encoded)
    assert not verify_password("Secret124", encoded)


def test_verify_rejects_malformed_hash():
    assert not verify_password("Secret123", "plain-text")
    assert not verify_password("Secret123", "scrypt$x$8$1$salt$hash")


def test_tokens():
    token = generate_token()
    assert len(token) == 64
    assert tokens_match(token, token)
    assert not tokens_match(token, generate_token())
