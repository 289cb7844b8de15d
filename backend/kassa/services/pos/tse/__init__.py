"""Fiscal signing (TSE) adapter."""

from kassa.services.pos.tse.base import TseContext, TseError, TseFinishResult, TseProvider, TseStartResult
from kassa.services.pos.tse.service import (
    TseProviderRegistry,
    get_tse_health,
    get_tse_provider,
    tse_cancel,
    tse_finish,
    tse_start,
)
