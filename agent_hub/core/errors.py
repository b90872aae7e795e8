class ModelGatewayError(RuntimeError):
    """Raised when every backend attempt for one completion failed."""


class MissingParamsError(RuntimeError):
    """Raised when an executor's required params are still missing after enhancement."""

    def __init__(self, executor: str, missing):
        self.executor = executor
        self.missing = list(missing)
        super().__init__(
            f"Missing required parameters for {executor}: {', '.join(self.missing)}")


class RoutingDepthExceeded(RuntimeError):
    """Circuit breaker for routing loops."""

    def __init__(self, message: str = "Maximum routing depth exceeded. Task routing stopped to prevent infinite loops."):
        super().__init__(message)
