class DecompileError(Exception):
    pass


class HeaderError(DecompileError):
    pass


class TruncatedInstruction(DecompileError):

    def __init__(self, addr: int, opcode: int):
        self.addr = addr
        self.opcode = opcode
        super().__init__(f'QCode {self.opcode_text} at ${addr:04X} runs past the end of the procedure')

    @property
    def opcode_text(self) -> str:
        return f'{self.opcode:02X}' if self.opcode >= 0 else '(end of buffer)'


class HandlerError(DecompileError):

    def __init__(self, opcode: int, message: str):
        super().__init__(message)
        self.opcode = opcode
