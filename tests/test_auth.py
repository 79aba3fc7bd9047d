import hashlib

import nacl.bindings
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from mysql_wire.auth import (
    FAST_AUTH_SUCCESS,
    PERFORM_FULL_AUTHENTICATION,
    REQUEST_PUBLIC_KEY,
    AuthInfo,
    ed25519_password,
    get_plugin,
    hash_password_323,
    scramble_caching_sha2,
    scramble_native_password,
    scramble_old_password,
    sha2_rsa_encrypt,
)
from mysql_wire.errors import AuthError, ErrorCode, ProtocolError
from mysql_wire.utils import xor_cycle
from tests.conftest import SCRAMBLE

PASSWORD = b"secret"


def rsa_key_pair() -> tuple:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_key, public_pem


def rsa_decrypt(private_key: rsa.RSAPrivateKey, data: bytes) -> bytes:
    return private_key.decrypt(
        data,
        padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA1()),
            algorithm=hashes.SHA1(),
            label=None,
        ),
    )


def info(**kwargs: object) -> AuthInfo:
    defaults: dict = {"username": "root", "password": PASSWORD, "scramble": SCRAMBLE}
    defaults.update(kwargs)
    return AuthInfo(**defaults)


def test_scramble_native_password() -> None:
    assert (
        scramble_native_password(PASSWORD, SCRAMBLE).hex()
        == "8817c50fa779daef010ee7577825b0847df9842e"
    )
    assert scramble_native_password(b"", SCRAMBLE) == b""


def test_scramble_caching_sha2() -> None:
    assert (
        scramble_caching_sha2(PASSWORD, SCRAMBLE).hex()
        == "c76e2898612a4cf042c77fa8c4702c4c64c0c2c557c53c4d75595aaa6abae809"
    )
    # The scramble may arrive with its trailing NUL
    assert scramble_caching_sha2(PASSWORD, SCRAMBLE + b"\x00") == (
        scramble_caching_sha2(PASSWORD, SCRAMBLE)
    )


def test_old_password() -> None:
    assert hash_password_323(b"password").hex() == "5d2e19393cc5ef67"
    assert hash_password_323(b"pass word") == hash_password_323(b"password")
    assert scramble_old_password(PASSWORD, b"abcdefgh").hex() == "544c5456514f545d"


def test_sha2_rsa_encrypt() -> None:
    private_key, public_pem = rsa_key_pair()
    encrypted = sha2_rsa_encrypt(PASSWORD, SCRAMBLE, public_pem)
    decrypted = rsa_decrypt(private_key, encrypted)
    assert xor_cycle(decrypted, SCRAMBLE) == PASSWORD + b"\x00"


def test_sha2_rsa_encrypt_bad_key() -> None:
    with pytest.raises(ProtocolError):
        sha2_rsa_encrypt(PASSWORD, SCRAMBLE, b"\x01garbage")


def test_ed25519() -> None:
    signature = ed25519_password(PASSWORD, SCRAMBLE)
    assert len(signature) == 64

    h = hashlib.sha512(PASSWORD).digest()
    s = bytearray(h[:32])
    s[0] &= 248
    s[31] = (s[31] & 127) | 64
    public_key = nacl.bindings.crypto_scalarmult_ed25519_base_noclamp(bytes(s))
    assert nacl.bindings.crypto_sign_open(signature + SCRAMBLE, public_key) == SCRAMBLE


@pytest.mark.asyncio
async def test_native_plugin() -> None:
    plugin = get_plugin("mysql_native_password")
    response, state = await plugin.start(info())
    assert response == scramble_native_password(PASSWORD, SCRAMBLE)
    await state.aclose()


@pytest.mark.asyncio
async def test_caching_sha2_fast_auth() -> None:
    plugin = get_plugin("caching_sha2_password")
    response, state = await plugin.start(info())
    assert response == scramble_caching_sha2(PASSWORD, SCRAMBLE)
    assert await state.asend(FAST_AUTH_SUCCESS) is None
    await state.aclose()


@pytest.mark.asyncio
async def test_caching_sha2_full_auth_secure() -> None:
    plugin = get_plugin("caching_sha2_password")
    _, state = await plugin.start(info(secure=True))
    assert await state.asend(PERFORM_FULL_AUTHENTICATION) == PASSWORD + b"\x00"
    await state.aclose()


@pytest.mark.asyncio
async def test_caching_sha2_full_auth_requests_key() -> None:
    private_key, public_pem = rsa_key_pair()
    plugin = get_plugin("caching_sha2_password")
    _, state = await plugin.start(info())
    assert await state.asend(PERFORM_FULL_AUTHENTICATION) == REQUEST_PUBLIC_KEY
    encrypted = await state.asend(public_pem)
    decrypted = rsa_decrypt(private_key, encrypted)
    assert xor_cycle(decrypted, SCRAMBLE) == PASSWORD + b"\x00"
    await state.aclose()


@pytest.mark.asyncio
async def test_caching_sha2_bad_status() -> None:
    plugin = get_plugin("caching_sha2_password")
    _, state = await plugin.start(info())
    with pytest.raises(ProtocolError):
        await state.asend(b"\x07")


@pytest.mark.asyncio
async def test_caching_sha2_empty_password() -> None:
    plugin = get_plugin("caching_sha2_password")
    response, state = await plugin.start(info(password=b""))
    assert response == b""
    await state.aclose()


@pytest.mark.asyncio
async def test_sha256_password_with_known_key() -> None:
    private_key, public_pem = rsa_key_pair()
    plugin = get_plugin("sha256_password")
    response, state = await plugin.start(info(server_public_key=public_pem))
    decrypted = rsa_decrypt(private_key, response)
    assert xor_cycle(decrypted, SCRAMBLE) == PASSWORD + b"\x00"
    await state.aclose()


@pytest.mark.asyncio
async def test_old_password_refused() -> None:
    plugin = get_plugin("mysql_old_password")
    with pytest.raises(AuthError) as ctx:
        await plugin.start(info())
    assert ctx.value.code == ErrorCode.INSECURE_API_ERR


@pytest.mark.asyncio
async def test_old_password_allowed() -> None:
    plugin = get_plugin("mysql_old_password")
    response, state = await plugin.start(
        info(scramble=b"abcdefgh", secure_auth=False)
    )
    assert response == bytes.fromhex("544c5456514f545d") + b"\x00"
    await state.aclose()


@pytest.mark.asyncio
async def test_clear_password() -> None:
    plugin = get_plugin("mysql_clear_password")
    with pytest.raises(AuthError):
        await plugin.start(info())

    response, state = await plugin.start(info(enable_cleartext_plugin=True))
    assert response == PASSWORD + b"\x00"
    await state.aclose()

    response, state = await plugin.start(info(secure=True))
    assert response == PASSWORD + b"\x00"
    await state.aclose()


def test_unknown_plugin() -> None:
    with pytest.raises(AuthError) as ctx:
        get_plugin("authentication_kerberos_client")
    assert ctx.value.code == ErrorCode.AUTH_PLUGIN_CANNOT_LOAD
