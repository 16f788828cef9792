# shift_recon package
__version__ = "0.1.0"

from .config import ReconciliationSettings, get_settings
from .database import (
    OperatorWorkSession,
    IdexTransaction,
    BybitTransaction,
    init_db,
    close_db,
)

# Reconciliation exports
from .reconciliation import (
    CabinetType,
    ReconciliationService,
    ReconciliationReport,
    ReconciliationRequest,
    ReconciliationStatus,
    WindowBuilder,
    Matcher,
    Aggregator,
    ReportGenerator,
)
