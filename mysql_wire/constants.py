from mysql_wire.types import Capabilities

DEFAULT_PORT = 3306

# Largest payload of a single physical packet
MAX_PACKET_LEN = 0xFFFFFF

DEFAULT_MAX_ALLOWED_PACKET = 16 * 1024 * 1024

# Payloads shorter than this are sent uncompressed over a compressed transport
MIN_COMPRESS_LENGTH = 50

DEFAULT_COMPRESSION_LEVEL = 6

DEFAULT_STMT_CACHE_SIZE = 32

# Parameters at least this large are streamed with COM_STMT_SEND_LONG_DATA
LONG_DATA_THRESHOLD = 8 * 1024 * 1024

# An auth exchange shouldn't need more round trips than this
MAX_AUTH_ROUNDS = 8

DEFAULT_CLIENT_CAPABILITIES = (
    Capabilities.CLIENT_LONG_PASSWORD
    | Capabilities.CLIENT_LONG_FLAG
    | Capabilities.CLIENT_PROTOCOL_41
    | Capabilities.CLIENT_TRANSACTIONS
    | Capabilities.CLIENT_SECURE_CONNECTION
    | Capabilities.CLIENT_MULTI_STATEMENTS
    | Capabilities.CLIENT_MULTI_RESULTS
    | Capabilities.CLIENT_PS_MULTI_RESULTS
    | Capabilities.CLIENT_PLUGIN_AUTH
    | Capabilities.CLIENT_CONNECT_ATTRS
    | Capabilities.CLIENT_PLUGIN_AUTH_LENENC_CLIENT_DATA
    | Capabilities.CLIENT_DEPRECATE_EOF
)

DEFAULT_CONNECT_ATTRS = {
    "_client_name": "mysql-wire",
}
