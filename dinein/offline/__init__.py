from dinein.offline.queue import (
    HttpOrderSubmitter,
    OfflineOrderQueue,
    OrderRejected,
    QueuedOrder,
    QueueState,
    SyncReport,
)
