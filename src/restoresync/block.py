"""Fixed-size data block, the unit of checksumming and repair."""

BLOCK_SIZE = 4096

_ZERO = bytes(BLOCK_SIZE)


class Block:
    """A mutable buffer of exactly BLOCK_SIZE bytes.

    Short reads zero-pad the remainder, so checksums and XOR parity always
    see a full block. Equality is byte-wise.
    """

    __slots__ = ("data",)

    def __init__(self, data: bytes = b""):
        self.data = bytearray(BLOCK_SIZE)
        if data:
            if len(data) > BLOCK_SIZE:
                raise ValueError(f"block data too long: {len(data)} > {BLOCK_SIZE}")
            self.data[:len(data)] = data

    def read_from(self, stream) -> int:
        """Fill the block from stream and return the number of bytes obtained.

        Reads until the block is full or the stream is exhausted. Any bytes
        beyond what was read are zeroed. OSError from the stream propagates.
        """
        view = memoryview(self.data)
        got = 0
        while got < BLOCK_SIZE:
            n = stream.readinto(view[got:])
            if not n:
                break
            got += n
        if got < BLOCK_SIZE:
            view[got:] = _ZERO[got:]
        return got

    def write_to(self, stream, length: int = BLOCK_SIZE) -> None:
        if length < 0 or length > BLOCK_SIZE:
            raise ValueError(f"invalid write length {length}")
        stream.write(bytes(self.data[:length]))

    def xor_in(self, other: "Block") -> None:
        value = int.from_bytes(self.data, "little") ^ int.from_bytes(other.data, "little")
        self.data[:] = value.to_bytes(BLOCK_SIZE, "little")

    def erase(self) -> None:
        self.data[:] = _ZERO

    def is_zero(self) -> bool:
        return self.data == _ZERO

    def copy(self) -> "Block":
        return Block(bytes(self.data))

    def __bytes__(self) -> bytes:
        return bytes(self.data)

    def __eq__(self, other):
        if not isinstance(other, Block):
            return NotImplemented
        return self.data == other.data

    __hash__ = None

    def __repr__(self):
        return f"Block({bytes(self.data[:8]).hex()}...)"


def block_count(length: int) -> int:
    """Number of blocks covering length bytes (last one possibly partial)."""
    return (length + BLOCK_SIZE - 1) // BLOCK_SIZE


def block_length(file_length: int, index: int) -> int:
    """Number of data bytes that block index holds in a file of file_length."""
    start = index * BLOCK_SIZE
    if start >= file_length:
        return 0
    return min(BLOCK_SIZE, file_length - start)
