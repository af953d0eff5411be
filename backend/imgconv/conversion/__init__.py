from .service import ConversionService, get_conversion_service
from .models import ConversionRequest, ConversionResult, ConversionTask, OutputFormat, SourceImage
from .search import SearchSettings, TargetSizeSearch

__all__ = [
    "ConversionService",
    "get_conversion_service",
    "ConversionRequest",
    "ConversionResult",
    "ConversionTask",
    "OutputFormat",
    "SourceImage",
    "SearchSettings",
    "TargetSizeSearch",
]
