"""Exception hierarchy shared by the ExifCraft pipeline."""


class ExifCraftError(Exception):
    """Base exception for the application."""


class ConfigError(ExifCraftError):
    """Raised when the configuration file is missing, unreadable or invalid."""


class InputError(ExifCraftError):
    """Raised when the requested directory or file inputs cannot be used."""


class NoImagesFoundError(ExifCraftError):
    """Raised when input resolution yields no supported image files."""


class ImageFileError(ExifCraftError):
    """Raised when an image file is missing, too large or cannot be decoded."""


class GenerationError(ExifCraftError):
    """Raised when the AI backend fails to produce a response."""


class MetadataError(ExifCraftError):
    """Raised when ExifTool cannot be used."""


class MetadataReadError(MetadataError):
    """Raised when existing tag values cannot be read."""


class MetadataWriteError(MetadataError):
    """Raised when the final write-set cannot be committed."""
