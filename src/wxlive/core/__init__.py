"""
微信数据库工具 - 核心模块
"""

from .crypto import (
    V4_PAGE_SIZE,
    V4_ITER_COUNT,
    KEY_SIZE,
    SALT_SIZE,
    RESERVE,
    V4DecryptionParams,
    derive_encryption_key,
    derive_mac_key,
    derive_keys,
    verify_page_hmac,
    decrypt_page,
    is_encrypted_db,
)
from .errors import (
    WxLiveError,
    ConfigError,
    KeyResolutionError,
    DecryptError,
    PageTooSmall,
    HmacMismatch,
    MediaDecryptError,
    UnknownFormat,
    FileMonitorError,
    ServiceStopped,
)
from .keys import KeyPair, KeyCache, normalize_hex_key, parse_key_pair
from .decryptor import DatabaseDecryptor, decrypt_database, extract_salt, validate_key
from .image_decryptor import (
    ImageFormat,
    ImageDecryptor,
    DatImageDecryptParams,
    DatImageDecryptResult,
    decrypt_dat_bytes,
    decrypt_dat_file,
    infer_xor_key,
    detect_image_format,
)

# service 依赖 utils.config_loader, 需要时单独导入:
#   from wxlive.core.service import ExtractionService

__all__ = [
    'V4_PAGE_SIZE',
    'V4_ITER_COUNT',
    'KEY_SIZE',
    'SALT_SIZE',
    'RESERVE',
    'V4DecryptionParams',
    'derive_encryption_key',
    'derive_mac_key',
    'derive_keys',
    'verify_page_hmac',
    'decrypt_page',
    'is_encrypted_db',
    'WxLiveError',
    'ConfigError',
    'KeyResolutionError',
    'DecryptError',
    'PageTooSmall',
    'HmacMismatch',
    'MediaDecryptError',
    'UnknownFormat',
    'FileMonitorError',
    'ServiceStopped',
    'KeyPair',
    'KeyCache',
    'normalize_hex_key',
    'parse_key_pair',
    'DatabaseDecryptor',
    'decrypt_database',
    'extract_salt',
    'validate_key',
    'ImageFormat',
    'ImageDecryptor',
    'DatImageDecryptParams',
    'DatImageDecryptResult',
    'decrypt_dat_bytes',
    'decrypt_dat_file',
    'infer_xor_key',
    'detect_image_format',
]
