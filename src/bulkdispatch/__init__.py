from .client import HttpBatchClient as HttpBatchClient
from .client import RemoteService as RemoteService
from .context import ExecutionContext as ExecutionContext
from .context import OperationContext as OperationContext
from .context import OperationState as OperationState
from .engine import Dispatcher as Dispatcher
from .engine import DispatchStats as DispatchStats
from .exceptions import ConfigurationError as ConfigurationError
from .exceptions import OperationError as OperationError
from .exceptions import ServiceFaultError as ServiceFaultError
from .executor import BatchPreview as BatchPreview
from .models import Fault as Fault
from .models import ItemOutcome as ItemOutcome
from .models import ignore_not_found as ignore_not_found
from .parallel import ParallelDispatcher as ParallelDispatcher
from .settings import DispatchSettings as DispatchSettings
from .throttling import ServiceProtectionClassifier as ServiceProtectionClassifier
from .throttling import ThrottleDecision as ThrottleDecision
from .throttling import ThrottlingClassifier as ThrottlingClassifier

__all__ = [
    "Dispatcher",
    "ParallelDispatcher",
    "DispatchSettings",
    "DispatchStats",
    "OperationContext",
    "OperationState",
    "ExecutionContext",
    "BatchPreview",
    "RemoteService",
    "HttpBatchClient",
    "Fault",
    "ItemOutcome",
    "ignore_not_found",
    "ThrottlingClassifier",
    "ThrottleDecision",
    "ServiceProtectionClassifier",
    "OperationError",
    "ServiceFaultError",
    "ConfigurationError",
]
