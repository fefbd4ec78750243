"""Infrastructure adapters for loopbot"""

from .executor_client import HttpTransactionExecutor  # noqa: F401
from .metrics import MetricsRecorder, PlanProgress  # noqa: F401
from .wallet_store import YamlWalletStore  # noqa: F401

__all__ = [
	"HttpTransactionExecutor",
	"MetricsRecorder",
	"PlanProgress",
	"YamlWalletStore",
]
