from client.kernel import EvidenceKernelClient, KernelResult
from client.state_store import (
    FileWizardStateStore,
    MemoryWizardStateStore,
    WizardState,
    WizardStateStore,
)
from client.wizard import SealingWizard, WizardBusy, WizardStepError

__all__ = [
    "EvidenceKernelClient",
    "FileWizardStateStore",
    "KernelResult",
    "MemoryWizardStateStore",
    "SealingWizard",
    "WizardBusy",
    "WizardState",
    "WizardStateStore",
    "WizardStepError",
]
