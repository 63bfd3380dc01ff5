from allegro.auth import generate_salt, hash_password, verify_password


def test_verify_password_valid_and_invalid():
    salt = generate_salt()
    expected_hash = hash_password("correcthorsebatterystaple", salt)
    assert verify_password("correcthorsebatterystaple", salt, expected_hash)
    assert not verify_password("tr0ub4dor&3", salt, expected_hash)


def test_hash_depends_on_salt():
    first, second = generate_salt(), generate_salt()
    assert first != second
    assert hash_password("pw", first) != hash_password("pw", second)
    assert not verify_password("pw", second, hash_password("pw", first))


def test_hash_is_hex_encoded_sha256_length():
    hashed = hash_password("pw", "salt")
    assert len(hashed) == 64
    int(hashed, 16)
