from __future__ import annotations

import hashlib
import io
import logging
import struct
from dataclasses import dataclass
from hashlib import sha1, sha256
from typing import AsyncGenerator, Dict, Optional, Tuple, Type

from mysql_wire import utils
from mysql_wire.errors import AuthError, ErrorCode, ProtocolError

logger = logging.getLogger(__name__)

SCRAMBLE_LENGTH = 20
SCRAMBLE_LENGTH_323 = 8

# caching_sha2_password "more data" status bytes
REQUEST_PUBLIC_KEY = b"\x02"
FAST_AUTH_SUCCESS = b"\x03"
PERFORM_FULL_AUTHENTICATION = b"\x04"


@dataclass
class AuthInfo:
    """
    Everything a plugin needs to compute its responses.

    Args:
        username: login user
        password: client secret
        scramble: nonce from the greeting or from the auth switch request
        secure: whether the transport is TLS (or a unix socket)
        server_public_key: PEM encoded RSA key, if the caller already has it
        enable_cleartext_plugin: allow sending the password in clear over an insecure transport
        secure_auth: refuse the pre-4.1 password hash
    """

    username: str
    password: bytes
    scramble: bytes
    secure: bool = False
    server_public_key: Optional[bytes] = None
    enable_cleartext_plugin: bool = False
    secure_auth: bool = True


# Plugins yield the bytes to send, or None when the server speaks next.
# Whatever the server replies with as "auth more data" is sent back in.
AuthState = AsyncGenerator[Optional[bytes], bytes]


class AuthPlugin:
    """
    Abstract base class for client authentication plugins.
    """

    name = ""

    async def auth(self, auth_info: AuthInfo) -> AuthState:
        """
        Create an async generator that drives the client side of authentication.

        The first yielded value is the initial auth response. Every later value
        answers an AuthMoreData packet, which is passed in with `asend`.
        """
        raise AuthError(f"Authentication plugin '{self.name}' is not implemented")
        yield b""  # pylint: disable=unreachable

    async def start(self, auth_info: AuthInfo) -> Tuple[bytes, AuthState]:
        state = self.auth(auth_info)
        data = await state.__anext__()
        return data or b"", state


class NativePasswordAuthPlugin(AuthPlugin):
    """
    Standard plugin that proves knowledge of the password with a SHA1 based scramble.
    """

    name = "mysql_native_password"

    async def auth(self, auth_info: AuthInfo) -> AuthState:
        yield scramble_native_password(auth_info.password, auth_info.scramble)


class CachingSha2PasswordAuthPlugin(AuthPlugin):
    """
    Default plugin of MySQL 8.

    The fast path is a SHA256 scramble, accepted when the server has the user's
    credentials cached. Otherwise the server asks for full authentication and
    the password is sent in clear over TLS, or RSA encrypted over plain TCP.
    """

    name = "caching_sha2_password"

    async def auth(self, auth_info: AuthInfo) -> AuthState:
        if not auth_info.password:
            yield b""
            return

        more = yield scramble_caching_sha2(auth_info.password, auth_info.scramble)

        if more == FAST_AUTH_SUCCESS:
            logger.debug("caching_sha2_password: fast auth succeeded")
            # The server follows up with an OK packet
            yield None
            return

        if more != PERFORM_FULL_AUTHENTICATION:
            raise ProtocolError(
                f"caching_sha2_password: unexpected status {more!r}, expected 0x03 or 0x04"
            )

        logger.debug("caching_sha2_password: performing full authentication")
        if auth_info.secure:
            yield auth_info.password + b"\x00"
            return

        public_key = auth_info.server_public_key
        if not public_key:
            public_key = yield REQUEST_PUBLIC_KEY
        yield sha2_rsa_encrypt(auth_info.password, auth_info.scramble, public_key)


class Sha256PasswordAuthPlugin(AuthPlugin):
    """
    RSA protected password exchange. Sends the password in clear over TLS.
    """

    name = "sha256_password"

    async def auth(self, auth_info: AuthInfo) -> AuthState:
        if auth_info.secure:
            yield auth_info.password + b"\x00"
            return

        if not auth_info.password:
            yield b"\x00"
            return

        public_key = auth_info.server_public_key
        if not public_key:
            # Request the public key
            public_key = yield b"\x01"
        yield sha2_rsa_encrypt(auth_info.password, auth_info.scramble, public_key)


class OldPasswordAuthPlugin(AuthPlugin):
    """
    Pre-4.1 password hashing. This is broken cryptography and is refused unless
    `secure_auth` is turned off.
    """

    name = "mysql_old_password"

    async def auth(self, auth_info: AuthInfo) -> AuthState:
        if auth_info.secure_auth:
            raise AuthError(
                "Server requested mysql_old_password, which is refused while secure_auth is enabled",
                ErrorCode.INSECURE_API_ERR,
            )
        yield scramble_old_password(auth_info.password, auth_info.scramble) + b"\x00"


class ClearPasswordAuthPlugin(AuthPlugin):
    """
    Sends the password as is, for servers that authenticate against an external
    service (LDAP, PAM).
    """

    name = "mysql_clear_password"

    async def auth(self, auth_info: AuthInfo) -> AuthState:
        if not (auth_info.secure or auth_info.enable_cleartext_plugin):
            raise AuthError(
                "Server requested mysql_clear_password over an insecure connection. "
                "Enable the cleartext plugin or use TLS.",
                ErrorCode.AUTH_PLUGIN_CANNOT_LOAD,
            )
        yield auth_info.password + b"\x00"


class Ed25519AuthPlugin(AuthPlugin):
    """
    MariaDB's ed25519 plugin: the password is the seed of an Ed25519 key and
    the client signs the scramble.
    """

    name = "client_ed25519"

    async def auth(self, auth_info: AuthInfo) -> AuthState:
        yield ed25519_password(auth_info.password, auth_info.scramble)


PLUGINS: Dict[str, Type[AuthPlugin]] = {
    plugin.name: plugin
    for plugin in (
        NativePasswordAuthPlugin,
        CachingSha2PasswordAuthPlugin,
        Sha256PasswordAuthPlugin,
        OldPasswordAuthPlugin,
        ClearPasswordAuthPlugin,
        Ed25519AuthPlugin,
    )
}


def get_plugin(name: str) -> AuthPlugin:
    try:
        return PLUGINS[name]()
    except KeyError:
        raise AuthError(
            f"Authentication plugin '{name}' is not supported",
            ErrorCode.AUTH_PLUGIN_CANNOT_LOAD,
        ) from None


def scramble_native_password(password: bytes, message: bytes) -> bytes:
    """Scramble used for mysql_native_password"""
    if not password:
        return b""

    # From docs,
    # response.data should be:
    #   SHA1(password) XOR SHA1("20-bytes random data from server" <concat> SHA1(SHA1(password)))
    stage1 = sha1(password).digest()
    stage2 = sha1(stage1).digest()
    result = sha1(message[:SCRAMBLE_LENGTH] + stage2).digest()
    return utils.xor(stage1, result)


def scramble_caching_sha2(password: bytes, nonce: bytes) -> bytes:
    """
    Scramble algorithm used in cached_sha2_password fast path.

    XOR(SHA256(password), SHA256(SHA256(SHA256(password)), nonce))
    """
    if not password:
        return b""

    p1 = sha256(password).digest()
    p2 = sha256(p1).digest()
    p3 = sha256(p2 + nonce[:SCRAMBLE_LENGTH]).digest()
    return utils.xor(p1, p3)


def sha2_rsa_encrypt(password: bytes, salt: bytes, public_key: bytes) -> bytes:
    """Encrypt password with salt and public_key, for sha256_password and caching_sha2_password"""
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import padding, rsa

    if not public_key.lstrip().startswith(b"-----BEGIN"):
        raise ProtocolError(
            f"Expected a PEM public key from the server, got {public_key[:16]!r}"
        )

    message = utils.xor_cycle(password + b"\x00", salt[:SCRAMBLE_LENGTH])
    try:
        rsa_key = serialization.load_pem_public_key(public_key)
    except ValueError as e:
        raise AuthError(f"Invalid server public key: {e}") from e
    if not isinstance(rsa_key, rsa.RSAPublicKey):
        raise AuthError("Server public key is not an RSA key")
    return rsa_key.encrypt(
        message,
        padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA1()),
            algorithm=hashes.SHA1(),
            label=None,
        ),
    )


class RandStruct323:
    def __init__(self, seed1: int, seed2: int):
        self.max_value = 0x3FFFFFFF
        self.seed1 = seed1 % self.max_value
        self.seed2 = seed2 % self.max_value

    def my_rnd(self) -> float:
        self.seed1 = (self.seed1 * 3 + self.seed2) % self.max_value
        self.seed2 = (self.seed1 + self.seed2 + 33) % self.max_value
        return float(self.seed1) / float(self.max_value)


def hash_password_323(password: bytes) -> bytes:
    nr = 1345345333
    add = 7
    nr2 = 0x12345671

    for c in password:
        # Spaces and tabs are skipped
        if c in (32, 9):
            continue
        nr ^= (((nr & 63) + add) * c + (nr << 8)) & 0xFFFFFFFF
        nr2 = (nr2 + ((nr2 << 8) ^ nr)) & 0xFFFFFFFF
        add = (add + c) & 0xFFFFFFFF

    r1 = nr & ((1 << 31) - 1)
    r2 = nr2 & ((1 << 31) - 1)
    return struct.pack(">LL", r1, r2)


def scramble_old_password(password: bytes, message: bytes) -> bytes:
    """Scramble for mysql_old_password"""
    if not password:
        return b""

    message = message[:SCRAMBLE_LENGTH_323]
    hash_pass = struct.unpack(">LL", hash_password_323(password))
    hash_message = struct.unpack(">LL", hash_password_323(message))

    rand_st = RandStruct323(
        hash_pass[0] ^ hash_message[0], hash_pass[1] ^ hash_message[1]
    )
    out = io.BytesIO()
    for _ in range(len(message)):
        out.write(bytes([int(rand_st.my_rnd() * 31) + 64]))
    extra = int(rand_st.my_rnd() * 31)
    return bytes(b ^ extra for b in out.getvalue())


def _scalar_clamp(s32: bytes) -> bytes:
    ba = bytearray(s32)
    ba[0] &= 248
    ba[31] = (ba[31] & 127) | 64
    return bytes(ba)


def ed25519_password(password: bytes, scramble: bytes) -> bytes:
    """
    Sign the scramble with an Ed25519 key derived from the password.

    The password is hashed instead of used as a 32 byte seed, so the signing
    steps are spelled out with libsodium primitives.
    """
    try:
        import nacl.bindings
    except ImportError:
        raise AuthError(
            "client_ed25519 requires PyNaCl. Install mysql-wire[ed25519].",
            ErrorCode.AUTH_PLUGIN_CANNOT_LOAD,
        ) from None

    h = hashlib.sha512(password).digest()
    s = _scalar_clamp(h[:32])
    r = hashlib.sha512(h[32:] + scramble).digest()
    r = nacl.bindings.crypto_core_ed25519_scalar_reduce(r)
    R = nacl.bindings.crypto_scalarmult_ed25519_base_noclamp(r)
    A = nacl.bindings.crypto_scalarmult_ed25519_base_noclamp(s)
    k = hashlib.sha512(R + A + scramble).digest()
    k = nacl.bindings.crypto_core_ed25519_scalar_reduce(k)
    ks = nacl.bindings.crypto_core_ed25519_scalar_mul(k, s)
    S = nacl.bindings.crypto_core_ed25519_scalar_add(ks, r)
    return R + S
