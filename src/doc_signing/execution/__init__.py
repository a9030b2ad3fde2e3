"""
Domain layer for multi-party document execution.
Provides interfaces (gateways) and a service that merges submissions into
templates, drives preview conversion and enforces sequential signing, so
front-ends (HTTP or others) can use the same core logic.
"""

from .interfaces import (
    Authorization,
    BlobStorageGateway,
    ConverterGateway,
    RecordStoreGateway,
    SecurityGateway,
    SourceFetcher,
)
from .errors import ExecutionError, describe_failure
from .merge import MergeResult, merge
from .models import DocumentInstance, FormTemplate, InstanceStatus, Signer, SignerStatus
from .service import ExecutionService, GenerationResult, SignResult
