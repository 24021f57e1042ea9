#!/usr/bin/env python3
"""
微信 v4 数据库页加解密

纯函数实现, 不做任何 I/O (is_encrypted_db 除外):
- 密钥派生 (PBKDF2-HMAC-SHA512)
- 第一页 HMAC 验证
- 单页 AES-256-CBC 解密
"""

import hashlib
import hmac
import struct
from dataclasses import dataclass, field

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from .errors import DecryptError, HmacMismatch, PageTooSmall

# ==============================================================================
# 常量定义
# ==============================================================================

# 微信 v4 版本常量
V4_PAGE_SIZE = 4096  # SQLite 页大小
V4_ITER_COUNT = 256000  # 加密密钥 PBKDF2 迭代次数
MAC_ITER_COUNT = 2  # MAC 密钥仅迭代 2 次 (格式本身如此)

# 密钥和哈希大小
KEY_SIZE = 32  # AES-256 密钥长度
IMAGE_KEY_SIZE = 16  # 图片密钥长度
SALT_SIZE = 16  # Salt 长度
IV_SIZE = 16  # AES IV 长度
HMAC_TAG_SIZE = 32  # 存储的 HMAC 只保留前 32 字节
AES_BLOCK_SIZE = 16  # AES 块大小

# Reserve 区域: IV (16) + HMAC (32)
RESERVE = IV_SIZE + HMAC_TAG_SIZE

# MAC salt = salt XOR 0x3a
MAC_SALT_MASK = 0x3a

# SQLite 文件头
SQLITE_HEADER = b"SQLite format 3\x00"


@dataclass(frozen=True)
class V4DecryptionParams:
    """
    单个数据库文件的解密参数

    由文件头的 salt 和用户提供的密钥对构造, 构造后不可修改
    """
    data_key: bytes = field(repr=False)
    image_key: bytes = field(repr=False)
    salt: bytes
    page_size: int = V4_PAGE_SIZE
    reserve_size: int = RESERVE

    @classmethod
    def from_key_pair(cls, key_pair, salt: bytes, page_size: int = V4_PAGE_SIZE,
                      reserve_size: int = RESERVE) -> "V4DecryptionParams":
        return cls(key_pair.data_key, key_pair.image_key, bytes(salt),
                   page_size, reserve_size)

    def derive_encryption_key(self) -> bytes:
        return derive_encryption_key(self.data_key, self.salt)

    def derive_mac_key(self, enc_key: bytes) -> bytes:
        return derive_mac_key(enc_key, self.salt)


# ==============================================================================
# 基础工具函数
# ==============================================================================

def xor_bytes(data: bytes, value: int) -> bytes:
    """
    对字节数组进行异或操作

    Args:
        data: 输入字节数组
        value: 异或值 (0-255)

    Returns:
        异或后的字节数组
    """
    return bytes(b ^ value for b in data)


# ==============================================================================
# 密钥派生
# ==============================================================================

def derive_encryption_key(data_key: bytes, salt: bytes) -> bytes:
    """
    原始密钥 + salt → 加密密钥 (PBKDF2-HMAC-SHA512, 256000 次迭代)

    Raises:
        ValueError: 如果密钥或 salt 长度不正确
    """
    if len(data_key) != KEY_SIZE:
        raise ValueError(f"密钥长度必须是 {KEY_SIZE} bytes, 实际: {len(data_key)}")

    if len(salt) != SALT_SIZE:
        raise ValueError(f"Salt 长度必须是 {SALT_SIZE} bytes, 实际: {len(salt)}")

    return hashlib.pbkdf2_hmac('sha512', data_key, salt, V4_ITER_COUNT, dklen=KEY_SIZE)


def derive_mac_key(enc_key: bytes, salt: bytes) -> bytes:
    """
    加密密钥 + (salt XOR 0x3a) → MAC 密钥 (PBKDF2-HMAC-SHA512, 2 次迭代)
    """
    mac_salt = xor_bytes(salt, MAC_SALT_MASK)
    return hashlib.pbkdf2_hmac('sha512', enc_key, mac_salt, MAC_ITER_COUNT, dklen=KEY_SIZE)


def derive_keys(key: bytes, salt: bytes) -> tuple:
    """
    派生加密密钥和 MAC 密钥

    微信 v4 使用两级密钥派生:
    1. 原始密钥 + salt → 加密密钥 (PBKDF2, 256000 次迭代)
    2. 加密密钥 + mac_salt → MAC 密钥 (PBKDF2, 2 次迭代)

    Args:
        key: 原始密钥 (32 bytes)
        salt: 数据库 salt (16 bytes, 文件前 16 字节)

    Returns:
        (enc_key, mac_key) 元组
    """
    enc_key = derive_encryption_key(key, salt)
    mac_key = derive_mac_key(enc_key, salt)
    return enc_key, mac_key


# ==============================================================================
# HMAC 计算
# ==============================================================================

def _hmac_range(page_len: int, reserve_size: int) -> tuple:
    data_len = page_len - reserve_size
    # HMAC 覆盖 page[16 : data_len - reserve + 16]
    return SALT_SIZE, data_len - reserve_size + SALT_SIZE


def calculate_page_hmac(page_data: bytes, mac_key: bytes, page_num: int = 1,
                        reserve_size: int = RESERVE) -> bytes:
    """
    计算第一页的 HMAC-SHA512 (截断为 32 字节)

    HMAC-SHA512(mac_key, page[16:data_len-reserve+16] || page_number)

    Args:
        page_data: 页数据
        mac_key: MAC 密钥 (32 bytes)
        page_num: 页码 (从 1 开始, 大端序写入)
        reserve_size: 保留区大小

    Returns:
        HMAC 前 32 字节
    """
    start, end = _hmac_range(len(page_data), reserve_size)

    h = hmac.new(mac_key, digestmod=hashlib.sha512)
    h.update(page_data[start:end])
    h.update(struct.pack('>I', page_num))

    return h.digest()[:HMAC_TAG_SIZE]


def verify_page_hmac(page_data: bytes, mac_key: bytes, page_num: int = 1,
                     reserve_size: int = RESERVE) -> bool:
    """
    验证第一页的 HMAC

    存储位置: page[data_len : data_len + 32]

    Returns:
        True: HMAC 验证通过
        False: HMAC 验证失败
    """
    data_len = len(page_data) - reserve_size
    calculated_mac = calculate_page_hmac(page_data, mac_key, page_num, reserve_size)
    stored_mac = page_data[data_len:data_len + HMAC_TAG_SIZE]

    # 使用恒定时间比较 (防止时序攻击)
    return hmac.compare_digest(calculated_mac, stored_mac)


# ==============================================================================
# AES 加密/解密
# ==============================================================================

def decrypt_aes_cbc(encrypted_data: bytes, key: bytes, iv: bytes) -> bytes:
    """
    AES-CBC 解密并去除 PKCS7 填充

    Raises:
        ValueError: 长度不是块大小的整数倍或填充错误
    """
    cipher = AES.new(key, AES.MODE_CBC, iv)
    return unpad(cipher.decrypt(encrypted_data), AES_BLOCK_SIZE)


def encrypt_aes_cbc(plain_data: bytes, key: bytes, iv: bytes) -> bytes:
    """
    AES-CBC 加密 (不填充, 调用方负责对齐)
    """
    cipher = AES.new(key, AES.MODE_CBC, iv)
    return cipher.encrypt(plain_data)


# ==============================================================================
# 单页解密
# ==============================================================================

def decrypt_page(page_data: bytes, page_num: int, enc_key: bytes, mac_key: bytes,
                 params: V4DecryptionParams) -> bytes:
    """
    解密单个数据库页

    页结构: [密文 (data_len)] + [IV (16)] + [HMAC (32), 仅第一页有效]
    第一页先验证 HMAC, 解密后在前面补回 salt + 原始 HMAC (共 48 字节)

    Args:
        page_data: 页数据 (最后一页可能不足 page_size)
        page_num: 页码 (从 1 开始)
        enc_key: 加密密钥
        mac_key: MAC 密钥
        params: 解密参数

    Returns:
        解密后的页数据

    Raises:
        PageTooSmall: 页长度小于保留区
        HmacMismatch: 第一页 HMAC 验证失败
        DecryptError: AES 解密或 PKCS7 去填充失败
    """
    reserve = params.reserve_size
    if len(page_data) < reserve:
        raise PageTooSmall(page_num, len(page_data), reserve)

    data_len = len(page_data) - reserve
    iv = page_data[data_len:data_len + IV_SIZE]

    if page_num == 1:
        start, end = _hmac_range(len(page_data), reserve)
        if end < start:
            # 第一页还需要容纳 HMAC 覆盖的区间
            raise PageTooSmall(page_num, len(page_data), 2 * reserve)
        if not verify_page_hmac(page_data, mac_key, page_num, reserve):
            raise HmacMismatch(page_num)

    try:
        decrypted = decrypt_aes_cbc(page_data[:data_len], enc_key, iv)
    except ValueError as e:
        raise DecryptError(f"AES 解密失败: {e}", page_num) from e

    if page_num == 1:
        stored_mac = page_data[data_len:data_len + HMAC_TAG_SIZE]
        return params.salt + stored_mac + decrypted

    return decrypted


# ==============================================================================
# 工具函数
# ==============================================================================

def is_encrypted_db(file_path) -> bool:
    """
    检查数据库是否已加密

    Returns:
        True: 已加密
        False: 未加密 (标准 SQLite 格式)
    """
    with open(file_path, 'rb') as f:
        header = f.read(len(SQLITE_HEADER))

    # 如果是标准 SQLite 头，说明未加密
    return header != SQLITE_HEADER
