from __future__ import annotations


# Magic bytes (checked against the first bytes of a file, never its name)
ZIP_MAGIC = b"PK\x03\x04"
ZIP_EMPTY_MAGIC = b"PK\x05\x06"
ZIP_SPANNED_MAGIC = b"PK\x07\x08"
RAR4_MAGIC = b"Rar!\x1a\x07\x00"
RAR5_MAGIC = b"Rar!\x1a\x07\x01\x00"
SEVEN_ZIP_MAGIC = b"7z\xbc\xaf\x27\x1c"
PDF_MAGIC = b"%PDF"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
JPEG_MAGIC = b"\xff\xd8\xff"
GIF87_MAGIC = b"GIF87a"
GIF89_MAGIC = b"GIF89a"
RIFF_MAGIC = b"RIFF"
WEBP_MARKER = b"WEBP"  # at offset 8 inside a RIFF container
TIFF_LE_MAGIC = b"II*\x00"
TIFF_BE_MAGIC = b"MM\x00*"
FTYP_MARKER = b"ftyp"  # HEIC/HEIF box type at offset 4
# EPUB: stored "mimetype" member first, name and body right after the
# 30-byte local header
EPUB_MIMETYPE_MARKER = b"mimetypeapplication/epub+zip"
EPUB_MIMETYPE_OFFSET = 30

HEAD_PROBE_SIZE = 64

# Page images kept in listings (lowercase, no dot)
IMAGE_EXTENSIONS = frozenset(
    {"jpg", "jpeg", "png", "gif", "webp", "tiff", "tif", "heic", "heif"}
)

# Archive members under these roots are metadata, not pages
IGNORED_ROOTS = ("__MACOSX",)

# EPUB container and package documents are parsed in memory
EPUB_XML_MAX_SIZE = 4 * 1024 * 1024


# Archive safety limits
DEFAULT_MAX_ENTRY_COUNT = 2000
DEFAULT_MAX_ENTRY_SIZE = 100 * 1024 * 1024       # 100 MiB per member
DEFAULT_MAX_TOTAL_SIZE = 2 * 1024 * 1024 * 1024  # 2 GiB per archive

# Streaming
COPY_CHUNK_SIZE = 64 * 1024
STREAM_CHUNK_SIZE = 1_048_576  # 1 MiB plaintext per sealed vault chunk
MAX_STREAM_CHUNK_SIZE = 16 * 1_048_576

# Page cache
DEFAULT_CACHE_MAX_BYTES = 256 * 1024 * 1024
DEFAULT_CACHE_MAX_PAGES = 16
DEFAULT_PREFETCH_COUNT = 3

# PDF rendering
PDF_RENDER_SCALE = 2.0
PDF_MAX_DIMENSION = 4096

# Vault layout
VAULT_CONFIG_NAME = "vault.json"
VAULT_MANIFEST_NAME = "manifest.encrypted"
VAULT_FILES_DIR = "files"
VAULT_BLOB_SUFFIX = ".enc"
VAULT_FORMAT_VERSION = 1
DEFAULT_SCRATCH_LIFETIME = 30 * 60  # seconds

# Temp directory prefixes
EXTRACT_DIR_PREFIX = "comicvault-extract-"
CACHE_DIR_PREFIX = "comicvault-cache-"
SCRATCH_DIR_PREFIX = "comicvault-vault-"
