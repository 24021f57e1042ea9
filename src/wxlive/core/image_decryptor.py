"""
微信图片解密模块

- 通用 .dat: XOR (指定或根据图片头自动推导) + 可选 AES-CBC
- V4 .dat 容器 (07 08 56 31/32): AES-ECB 头部 + 明文中段 + XOR 尾部
"""
import struct
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from .errors import MediaDecryptError, UnknownFormat
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ImageFormat(Enum):
    JPEG = 'jpg'
    PNG = 'png'
    GIF = 'gif'
    WEBP = 'webp'
    BMP = 'bmp'

    @property
    def extension(self) -> str:
        return self.value


# 图片格式头定义 (顺序即匹配优先级)
JPG_HEADER = bytes([0xFF, 0xD8, 0xFF])
PNG_HEADER = bytes([0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A])
GIF89_HEADER = b"GIF89a"
GIF87_HEADER = b"GIF87a"
BMP_HEADER = b"BM"
WXGF_HEADER = bytes([0x77, 0x78, 0x67, 0x66])

XOR_SIGNATURES = [
    (JPG_HEADER, ImageFormat.JPEG),
    (PNG_HEADER, ImageFormat.PNG),
    (GIF89_HEADER, ImageFormat.GIF),
    (GIF87_HEADER, ImageFormat.GIF),
    (BMP_HEADER, ImageFormat.BMP),
]

# V4 格式定义
V4_FORMAT1_HEADER = bytes([0x07, 0x08, 0x56, 0x31])
V4_FORMAT2_HEADER = bytes([0x07, 0x08, 0x56, 0x32])
V4_FORMAT1_AES_KEY = b"cfcd208495d565ef"
V4_HEADER_SIZE = 15
V4_DEFAULT_XOR_KEY = 0x37

AES_IV_SIZE = 16
AES_KEY_SIZES = (16, 24, 32)


@dataclass
class DatImageDecryptParams:
    """
    通用 .dat 解密参数

    xor_key 为空且 auto_detect_xor 为 True 时自动推导 XOR 密钥
    """
    xor_key: Optional[bytes] = None
    aes_key: Optional[bytes] = None
    aes_iv: Optional[bytes] = None
    auto_detect_xor: bool = True


@dataclass
class DatImageDecryptResult:
    format: ImageFormat
    xor_key_used: Optional[bytes]
    bytes_written: int
    output_path: Optional[Path] = None


def detect_image_format(data: bytes) -> Optional[ImageFormat]:
    """根据文件头检测图片类型, 第一个匹配的格式胜出"""
    if data.startswith(JPG_HEADER):
        return ImageFormat.JPEG
    if data.startswith(PNG_HEADER):
        return ImageFormat.PNG
    if data.startswith(GIF89_HEADER) or data.startswith(GIF87_HEADER):
        return ImageFormat.GIF
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ImageFormat.WEBP
    if data.startswith(BMP_HEADER):
        return ImageFormat.BMP
    return None


def infer_xor_key(data: bytes) -> Optional[bytes]:
    """
    通过已知的图片格式头推导单字节 XOR 密钥

    Returns:
        单字节密钥, 没有任何格式匹配时返回 None
    """
    if not data:
        return None

    for header, _ in XOR_SIGNATURES:
        if len(data) < len(header):
            continue

        # 计算XOR密钥
        candidate = data[0] ^ header[0]

        # 验证整个格式头是否匹配
        if all(data[i] ^ candidate == header[i] for i in range(len(header))):
            return bytes([candidate])

    return None


def apply_xor(data: bytes, key: bytes) -> bytes:
    """XOR 整个缓冲区, 多字节密钥循环使用"""
    if len(key) == 1:
        value = key[0]
        return bytes(b ^ value for b in data)

    size = len(key)
    return bytes(b ^ key[i % size] for i, b in enumerate(data))


def decrypt_aes_cbc_pkcs7(data: bytes, key: bytes, iv: Optional[bytes] = None) -> bytes:
    """
    AES-CBC 解密, 密钥长度 16/24/32 分别对应 AES-128/192/256

    IV 默认 16 个 0 字节

    Raises:
        MediaDecryptError: 参数不合法或解密失败
    """
    if not data:
        raise MediaDecryptError("AES 解密的数据为空")

    if iv is None:
        iv = bytes(AES_IV_SIZE)
    elif len(iv) != AES_IV_SIZE:
        raise MediaDecryptError(f"AES IV 长度不正确: {len(iv)}, 应为 {AES_IV_SIZE}")

    if len(key) not in AES_KEY_SIZES:
        raise MediaDecryptError(f"不支持的 AES 密钥长度: {len(key)} (应为 16/24/32)")

    try:
        cipher = AES.new(key, AES.MODE_CBC, iv)
        return unpad(cipher.decrypt(data), AES.block_size)
    except ValueError as e:
        raise MediaDecryptError(f"AES-{len(key) * 8} 解密失败: {e}") from e


def _resolve_xor_key(data: bytes, params: DatImageDecryptParams) -> Optional[bytes]:
    if params.xor_key is not None:
        if len(params.xor_key) == 0:
            raise MediaDecryptError("xor_key 不能为空")
        return bytes(params.xor_key)

    if params.auto_detect_xor:
        return infer_xor_key(data)

    return None


def decrypt_dat_bytes(data: bytes, params: Optional[DatImageDecryptParams] = None
                      ) -> Tuple[bytes, ImageFormat, Optional[bytes]]:
    """
    解密通用 .dat 数据

    1. XOR (指定的密钥, 或自动推导)
    2. 可选 AES-CBC
    3. 根据文件头识别图片格式

    Returns:
        (解密后的数据, 图片格式, 使用的 XOR 密钥)

    Raises:
        MediaDecryptError: 输入为空或参数不合法
        UnknownFormat: 结果不是已知图片格式 (和密钥错误无法区分)
    """
    if not data:
        raise MediaDecryptError(".dat 数据为空, 无法解密")

    if params is None:
        params = DatImageDecryptParams()

    payload = bytes(data)
    xor_key = _resolve_xor_key(payload, params)
    if xor_key is not None:
        payload = apply_xor(payload, xor_key)

    if params.aes_key is not None:
        payload = decrypt_aes_cbc_pkcs7(payload, params.aes_key, params.aes_iv)

    image_format = detect_image_format(payload)
    if image_format is None:
        raise UnknownFormat()

    return payload, image_format, xor_key


def decrypt_dat_file(input_path, output_path,
                     params: Optional[DatImageDecryptParams] = None) -> DatImageDecryptResult:
    """
    解密 .dat 文件并写出图片

    Raises:
        MediaDecryptError: 读写失败或解密失败
    """
    input_path = Path(input_path)
    output_path = Path(output_path)

    try:
        encrypted = input_path.read_bytes()
    except OSError as e:
        raise MediaDecryptError(f"读取文件失败: {e}") from e

    decrypted, image_format, xor_key = decrypt_dat_bytes(encrypted, params)
    _write_output(output_path, decrypted)

    return DatImageDecryptResult(image_format, xor_key, len(decrypted), output_path)


def _write_output(output_path: Path, data: bytes):
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(data)
    except OSError as e:
        raise MediaDecryptError(f"写出文件失败: {e}") from e


# ==============================================================================
# V4 容器
# ==============================================================================

def is_v4_dat(data: bytes) -> bool:
    return data[:4] in (V4_FORMAT1_HEADER, V4_FORMAT2_HEADER)


def _decrypt_aes_ecb(data: bytes, key: bytes) -> bytes:
    """AES-ECB模式解密, 有效的 PKCS7 padding 会被去掉"""
    cipher = AES.new(key, AES.MODE_ECB)
    decrypted = cipher.decrypt(data)

    try:
        return unpad(decrypted, AES.block_size)
    except ValueError:
        return decrypted


def decrypt_v4_dat(data: bytes, aes_key: Optional[bytes] = None,
                   xor_key: int = V4_DEFAULT_XOR_KEY) -> Tuple[bytes, ImageFormat]:
    """
    V4格式解密 (AES-ECB + XOR)

    文件结构:
    - 0-3:   格式头 (0x07085631 或 0x07085632)
    - 4-5:   未知
    - 6-9:   AES加密长度 (小端序)
    - 10-13: XOR加密长度 (小端序)
    - 14:    0x01
    - 15+:   加密数据

    Args:
        data: .dat 文件数据
        aes_key: Format2 需要的图片密钥 (16 bytes); Format1 使用内置密钥
        xor_key: 尾部 XOR 密钥

    Raises:
        MediaDecryptError: 数据不合法或缺少密钥
        UnknownFormat: 结果不是已知图片格式
    """
    if len(data) < V4_HEADER_SIZE:
        raise MediaDecryptError(f"V4格式数据太短: {len(data)} bytes")

    if data[:4] == V4_FORMAT1_HEADER:
        aes_key = V4_FORMAT1_AES_KEY
    elif data[:4] == V4_FORMAT2_HEADER:
        if aes_key is None:
            raise MediaDecryptError("需要设置V4 Format2的AES密钥 (image_key)")
    else:
        raise MediaDecryptError("不是V4格式的 .dat 文件")

    if len(aes_key) not in AES_KEY_SIZES:
        raise MediaDecryptError(f"不支持的 AES 密钥长度: {len(aes_key)} (应为 16/24/32)")

    # 解析头部
    aes_len, xor_len = struct.unpack('<II', data[6:14])
    file_data = data[V4_HEADER_SIZE:]

    if xor_len > len(file_data):
        raise MediaDecryptError(f"XOR长度超出数据范围: {xor_len}")

    # AES部分 (对齐到16字节, 带 padding)
    aes_len_aligned = min(((aes_len // 16) + 1) * 16, len(file_data))

    try:
        aes_decrypted = _decrypt_aes_ecb(file_data[:aes_len_aligned], aes_key)
    except ValueError as e:
        raise MediaDecryptError(f"AES-ECB 解密失败: {e}") from e

    # 1. AES解密部分 (去除padding)
    result = bytearray(aes_decrypted[:aes_len])

    # 2. 中间未加密部分
    middle_end = len(file_data) - xor_len
    if aes_len_aligned < middle_end:
        result.extend(file_data[aes_len_aligned:middle_end])

    # 3. XOR解密尾部
    if xor_len > 0:
        result.extend(b ^ xor_key for b in file_data[middle_end:])

    result = bytes(result)
    image_format = detect_image_format(result)
    if image_format is None:
        if result.startswith(WXGF_HEADER):
            # 动画表情需要 HEVC 解码
            raise UnknownFormat("WXGF格式(动画表情)暂不支持")
        raise UnknownFormat()

    return result, image_format


def validate_image_key(sample_path, image_key: bytes) -> bool:
    """
    用一个 V4 Format2 样本验证用户提供的图片密钥

    只解密样本的第一个 AES 块, 检查是否是已知的图片头

    Raises:
        MediaDecryptError: 密钥长度不对, 样本无法读取或不是 V4 Format2
    """
    if image_key is None or len(image_key) not in AES_KEY_SIZES:
        length = None if image_key is None else len(image_key)
        raise MediaDecryptError(f"不支持的 AES 密钥长度: {length} (应为 16/24/32)")

    try:
        with open(sample_path, 'rb') as f:
            data = f.read(V4_HEADER_SIZE + 16)
    except OSError as e:
        raise MediaDecryptError(f"读取样本失败: {e}") from e

    if len(data) < V4_HEADER_SIZE + 16 or data[:4] != V4_FORMAT2_HEADER:
        raise MediaDecryptError(f"不是V4 Format2样本: {sample_path}")

    cipher = AES.new(image_key, AES.MODE_ECB)
    decrypted = cipher.decrypt(data[V4_HEADER_SIZE:V4_HEADER_SIZE + 16])

    return detect_image_format(decrypted) is not None or decrypted.startswith(WXGF_HEADER)


class ImageDecryptor:
    """
    微信图片解密器

    V4 容器使用账号的 image_key, 其它 .dat 使用 XOR 自动推导

    用法:
        decryptor = ImageDecryptor(image_key=key_pair.image_key)
        result = decryptor.decrypt_file("abc.dat", "out/")
    """

    def __init__(self, image_key: Optional[bytes] = None, xor_key: int = V4_DEFAULT_XOR_KEY):
        self.image_key = image_key
        self.xor_key_v4 = xor_key

    def decrypt_dat(self, data: bytes) -> Tuple[bytes, ImageFormat, Optional[bytes]]:
        """
        Returns:
            (解密后的数据, 图片格式, 使用的 XOR 密钥)
        """
        if is_v4_dat(data):
            decrypted, image_format = decrypt_v4_dat(data, self.image_key, self.xor_key_v4)
            return decrypted, image_format, bytes([self.xor_key_v4])

        return decrypt_dat_bytes(data, DatImageDecryptParams())

    def decrypt_file(self, input_path, output_dir=None) -> DatImageDecryptResult:
        """
        解密单个.dat文件, 输出为 <文件名>.<扩展名>

        Args:
            input_path: 输入.dat文件路径
            output_dir: 输出目录(默认与输入文件同目录)
        """
        input_path = Path(input_path)

        try:
            encrypted_data = input_path.read_bytes()
        except OSError as e:
            raise MediaDecryptError(f"读取文件失败: {e}") from e

        decrypted, image_format, xor_key = self.decrypt_dat(encrypted_data)

        output_dir = input_path.parent if output_dir is None else Path(output_dir)
        output_path = output_dir / f"{input_path.stem}.{image_format.extension}"
        _write_output(output_path, decrypted)

        logger.debug("图片解密完成: %s -> %s", input_path, output_path)
        return DatImageDecryptResult(image_format, xor_key, len(decrypted), output_path)
