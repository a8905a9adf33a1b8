class IncentivesError(Exception):
    pass


class DataIntegrityError(IncentivesError):
    # missing / malformed upstream events, never recoverable inside a run
    pass


class IncentiveConfigError(IncentivesError, ValueError):
    pass


class FetchError(IncentivesError, RuntimeError):
    pass
