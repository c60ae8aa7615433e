"""
Liquidator error taxonomy.

Every error below the base class is fatal for the current run except where the
caller explicitly catches it; the process is restarted externally.
"""


class LiquidatorError(Exception):
    """Base class for all liquidator failures"""
    pass


class TransportError(LiquidatorError):
    """RPC failure or subscription drop"""
    pass


class DecodeError(LiquidatorError):
    """Unexpected topic or shape in a log or call result"""
    pass


class EvaluationError(LiquidatorError):
    """A position could not be fetched during an evaluation pass"""
    def __init__(self, index: int, reason: str):
        self.index = index
        self.reason = reason
        super().__init__(f"Failed to evaluate position {index}: {reason}")


class SubmissionError(LiquidatorError):
    """One or more chunks could not be prepared for submission"""
    def __init__(self, method: str, failed_chunks: list):
        self.method = method
        self.failed_chunks = failed_chunks
        super().__init__(f"{method}: {len(failed_chunks)} chunk(s) failed before dispatch")


class ReorgDetectedError(LiquidatorError):
    """A delivered log was retracted by a chain reorganization"""
    def __init__(self, block_number: int, tx_hash: str):
        self.block_number = block_number
        self.tx_hash = tx_hash
        super().__init__(f"Log from tx {tx_hash} at block {block_number} was removed by a reorg")


class ConfigError(LiquidatorError):
    """Configuration is missing or invalid"""
    pass


class KeystoreError(LiquidatorError):
    """Keystore file missing or could not be unlocked"""
    pass
