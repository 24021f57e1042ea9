#!/usr/bin/env python3
"""
微信数据库解密器

将加密的微信 v4 数据库逐页解密成标准 SQLite 数据库
"""

from pathlib import Path
from typing import Optional

from .crypto import (
    V4_PAGE_SIZE,
    SALT_SIZE,
    RESERVE,
    V4DecryptionParams,
    decrypt_page,
    is_encrypted_db,
)
from .errors import DecryptError
from .keys import KeyPair
from ..utils.logger import get_logger

logger = get_logger(__name__)

# 每解密多少页输出一次进度
PROGRESS_EVERY = 100


def extract_salt(file_path) -> bytes:
    """
    读取数据库文件前 16 字节作为 Salt

    Raises:
        DecryptError: 文件无法读取或不足 16 字节
    """
    try:
        with open(file_path, 'rb') as f:
            salt = f.read(SALT_SIZE)
    except OSError as e:
        raise DecryptError(f"读取 salt 失败: {e}") from e

    if len(salt) < SALT_SIZE:
        raise DecryptError(f"文件太小，无法提取 salt: {len(salt)} bytes")

    return salt


class DatabaseDecryptor:
    """
    微信数据库解密器

    用法:
        key_pair = KeyPair.from_hex("9b646e026b1042ab...", "3f2a...")
        decryptor = DatabaseDecryptor(key_pair)
        decryptor.decrypt_file("message_0.db", "decrypted.db")
    """

    def __init__(self, key_pair: KeyPair, page_size: int = V4_PAGE_SIZE,
                 reserve_size: int = RESERVE):
        self.key_pair = key_pair
        self.page_size = page_size
        self.reserve_size = reserve_size

    @classmethod
    def from_hex(cls, data_key_hex: str, image_key_hex: str) -> "DatabaseDecryptor":
        """
        Raises:
            ConfigError: 如果密钥格式不正确
        """
        return cls(KeyPair.from_hex(data_key_hex, image_key_hex))

    def _params(self, salt: bytes) -> V4DecryptionParams:
        return V4DecryptionParams.from_key_pair(
            self.key_pair, salt, self.page_size, self.reserve_size
        )

    def decrypt_file(self, input_path, output_path, salt: Optional[bytes] = None):
        """
        解密整个数据库文件

        失败时抛出异常, 已经写出的部分保留在磁盘上用于排查

        Args:
            input_path: 加密的数据库文件路径
            output_path: 解密后的输出文件路径
            salt: 文件 salt (默认从文件头读取)

        Raises:
            DecryptError: I/O 错误, HMAC 不匹配, AES 解密失败等
        """
        input_path = Path(input_path)
        output_path = Path(output_path)

        # 1. 提取 Salt
        if salt is None:
            salt = extract_salt(input_path)

        try:
            encrypted = is_encrypted_db(input_path)
        except OSError as e:
            raise DecryptError(f"I/O 错误: {e}") from e
        if not encrypted:
            raise DecryptError(f"文件已经是明文 SQLite 数据库: {input_path}")

        # 2. 派生密钥 (只做一次)
        params = self._params(salt)
        enc_key = params.derive_encryption_key()
        mac_key = params.derive_mac_key(enc_key)

        # 3. 逐页解密
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            total_pages, total_bytes = self._decrypt_pages(
                input_path, output_path, enc_key, mac_key, params
            )
        except OSError as e:
            raise DecryptError(f"I/O 错误: {e}") from e

        logger.info(
            "解密完成: %s -> %s (%d 页, %d bytes)",
            input_path, output_path, total_pages, total_bytes
        )

    def _decrypt_pages(self, input_path: Path, output_path: Path,
                       enc_key: bytes, mac_key: bytes,
                       params: V4DecryptionParams) -> tuple:
        """
        逐页解密数据库

        Returns:
            (页数, 写出的字节数)
        """
        page_num = 0
        written = 0

        with open(input_path, 'rb') as inf, open(output_path, 'wb') as outf:
            while True:
                page_data = inf.read(params.page_size)
                if not page_data:
                    break

                page_num += 1
                if len(page_data) < params.page_size:
                    logger.warning(
                        "%s: 最后一页不完整 (%d/%d bytes)",
                        input_path.name, len(page_data), params.page_size
                    )

                decrypted = decrypt_page(page_data, page_num, enc_key, mac_key, params)
                outf.write(decrypted)
                written += len(decrypted)

                if page_num % PROGRESS_EVERY == 0:
                    logger.debug("%s: 已解密 %d 页", input_path.name, page_num)

        return page_num, written

    def validate_key(self, input_path) -> bool:
        """
        验证密钥是否正确

        只解密第一页 (包括 HMAC 验证), 不写出任何文件

        Returns:
            True: 密钥正确, False: 密钥错误

        Raises:
            DecryptError: 文件无法读取
        """
        salt = extract_salt(input_path)
        params = self._params(salt)

        try:
            with open(input_path, 'rb') as f:
                first_page = f.read(params.page_size)
        except OSError as e:
            raise DecryptError(f"读取第一页失败: {e}") from e

        enc_key = params.derive_encryption_key()
        mac_key = params.derive_mac_key(enc_key)

        try:
            decrypt_page(first_page, 1, enc_key, mac_key, params)
        except DecryptError as e:
            logger.debug("密钥验证失败: %s", e)
            return False

        return True


def decrypt_database(input_file, output_file, key_pair: KeyPair,
                     salt: Optional[bytes] = None):
    """
    便捷函数: 解密数据库

    Raises:
        DecryptError: 解密失败
    """
    DatabaseDecryptor(key_pair).decrypt_file(input_file, output_file, salt)


def validate_key(input_file, key_pair: KeyPair) -> bool:
    """便捷函数: 验证密钥对能否解开数据库第一页"""
    return DatabaseDecryptor(key_pair).validate_key(input_file)


if __name__ == "__main__":
    import sys

    from ..utils.logger import setup_logger

    if len(sys.argv) < 5:
        print("用法: python -m wxlive.core.decryptor <加密DB> <数据密钥HEX> <图片密钥HEX> <输出DB>")
        sys.exit(1)

    setup_logger('wxlive')
    try:
        decrypt_database(sys.argv[1], sys.argv[4], KeyPair.from_hex(sys.argv[2], sys.argv[3]))
    except Exception as e:
        print(f"❌ 解密失败: {e}")
        sys.exit(1)
