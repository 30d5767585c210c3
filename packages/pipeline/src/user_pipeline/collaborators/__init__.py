from .build import (
    BUILD_LOG,
    IMAGE_DEFINITIONS,
    PHASES,
    BuildConfig,
    BuildResult,
    BuildRunner,
    LocalBuildRunner,
    PhaseResult,
)
from .engine import (
    LocalTemplateEngine,
    container_images,
    image_health_check,
    physical_names,
)
from .http import (
    ArchiveTooLarge,
    DeterministicExponentialBackoff,
    HttpFetchError,
    HttpRetriesExceeded,
    HttpStatusError,
    RetryPolicy,
    download,
    make_http_client,
    run_with_retries,
)
from .images import LocalImageRepository
from .source import (
    DEFAULT_ARCHIVE_URL,
    ArchiveSourceProvider,
    DirectorySourceProvider,
    SourceCoordinate,
    SourceProvider,
    SourceSnapshot,
    resolve_version,
    unpack_archive,
)

__all__ = [
    "ArchiveSourceProvider",
    "ArchiveTooLarge",
    "BUILD_LOG",
    "BuildConfig",
    "BuildResult",
    "BuildRunner",
    "DEFAULT_ARCHIVE_URL",
    "DeterministicExponentialBackoff",
    "DirectorySourceProvider",
    "HttpFetchError",
    "HttpRetriesExceeded",
    "HttpStatusError",
    "IMAGE_DEFINITIONS",
    "LocalBuildRunner",
    "LocalImageRepository",
    "LocalTemplateEngine",
    "PHASES",
    "PhaseResult",
    "RetryPolicy",
    "SourceCoordinate",
    "SourceProvider",
    "SourceSnapshot",
    "container_images",
    "download",
    "image_health_check",
    "make_http_client",
    "physical_names",
    "resolve_version",
    "run_with_retries",
    "unpack_archive",
]
