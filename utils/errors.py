class AirdropSyncError(Exception):
    """同步 / 校验子系统的基础异常"""


class SyncInProgress(AirdropSyncError):
    """已有一次同步在执行，调用方稍后重试（HTTP 层映射为 409）"""


class SourceUnavailable(AirdropSyncError):
    def __init__(self, source, reason):
        self.source = source
        self.reason = reason
        super().__init__(f"Source {source} unavailable: {reason}")


class ChainUnreachable(AirdropSyncError):
    def __init__(self, blockchain, reason):
        self.blockchain = blockchain
        self.reason = reason
        super().__init__(f"Chain {blockchain} unreachable: {reason}")


class DuplicateKey(AirdropSyncError):
    """唯一键冲突（并发创建同一 identity / 同一钱包重复 claim）"""


class RecordNotFound(AirdropSyncError):
    pass


class InvalidTransition(AirdropSyncError):
    pass
