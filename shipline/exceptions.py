class ShiplineError(Exception):
    pass


class ConfigurationError(ShiplineError):
    pass


class ToolInvocationError(ShiplineError):
    def __init__(self, args: tuple, exit_code: int, stderr: str = ''):
        self.args_ = args
        self.exit_code = exit_code
        self.stderr = stderr
        tool = args[0] if args else '?'
        super().__init__(f'{tool} exited with code {exit_code}')


class ManifestError(ShiplineError):
    pass


class AuthError(ShiplineError):
    pass
