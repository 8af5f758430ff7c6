"""Classification of files into a closed set of categories."""

from dataclasses import dataclass

from cloudvault.models.file import FileCategory


@dataclass(frozen=True)
class CategoryRule:
    """Mime type prefixes and extensions that identify a category."""

    mime_prefixes: tuple[str, ...] = ()
    extensions: frozenset[str] = frozenset()


CATEGORY_RULES: dict[FileCategory, CategoryRule] = {
    FileCategory.IMAGE: CategoryRule(
        ("image/",),
        frozenset(
            {"jpg", "jpeg", "png", "gif", "bmp", "webp", "svg", "ico", "tiff", "avif"}
        ),
    ),
    FileCategory.VIDEO: CategoryRule(
        ("video/",), frozenset({"mp4", "avi", "mov", "wmv", "flv", "mkv", "webm"})
    ),
    FileCategory.AUDIO: CategoryRule(
        ("audio/",), frozenset({"mp3", "wav", "ogg", "flac", "m4a", "aac"})
    ),
    FileCategory.ARCHIVE: CategoryRule(
        (
            "application/zip",
            "application/x-rar-compressed",
            "application/vnd.rar",
            "application/x-7z-compressed",
            "application/x-tar",
            "application/gzip",
        ),
        frozenset({"zip", "rar", "7z", "tar", "gz", "bz2"}),
    ),
    FileCategory.CODE: CategoryRule(
        (
            "text/html",
            "text/css",
            "text/javascript",
            "application/javascript",
            "application/json",
            "application/xml",
            "text/x-python",
        ),
        frozenset(
            {
                "js", "ts", "jsx", "tsx", "html", "css", "scss", "json", "xml",
                "yaml", "yml", "py", "java", "cpp", "c", "cs", "go", "php", "rb",
            }
        ),
    ),
    FileCategory.DOCUMENT: CategoryRule(
        (
            "application/pdf",
            "application/msword",
            "application/vnd.openxmlformats-officedocument.wordprocessingml",
            "application/vnd.ms-excel",
            "application/vnd.openxmlformats-officedocument.spreadsheetml",
            "application/vnd.ms-powerpoint",
            "application/vnd.openxmlformats-officedocument.presentationml",
            "text/",
        ),
        frozenset(
            {"doc", "docx", "txt", "pdf", "xls", "xlsx", "ppt", "pptx", "rtf", "csv", "md", "odt"}
        ),
    ),
    FileCategory.OTHER: CategoryRule(),
    FileCategory.FOLDER: CategoryRule(),
}

# Categories a file can be matched against, most specific first.
_MATCH_ORDER = (
    FileCategory.IMAGE,
    FileCategory.VIDEO,
    FileCategory.AUDIO,
    FileCategory.ARCHIVE,
    FileCategory.CODE,
    FileCategory.DOCUMENT,
)

if _missing := set(FileCategory) - set(CATEGORY_RULES):
    raise RuntimeError(f"No category rule for {sorted(c.value for c in _missing)}")


def classify(is_folder: bool, extension: str | None, mime_type: str | None) -> FileCategory:
    """Return the category for an entity.

    The extension wins over the mime type since browsers often report a
    generic type for uploads.
    """
    if is_folder:
        return FileCategory.FOLDER
    if extension:
        ext = extension.lower()
        for category in _MATCH_ORDER:
            if ext in CATEGORY_RULES[category].extensions:
                return category
    if mime_type:
        mime = mime_type.lower()
        for category in _MATCH_ORDER:
            if any(mime.startswith(p) for p in CATEGORY_RULES[category].mime_prefixes):
                return category
    return FileCategory.OTHER
