from __future__ import annotations
from typing import NewType, Literal

Address = NewType("Address", str)   # 0x-prefixed, lowercase
TxHash  = NewType("TxHash", str)    # 66-char 0x-hash, lowercase
Status  = Literal["pending", "done", "failed"]
ContractKind = Literal["ERC721", "ERC1155"]
EventKind = Literal["Single", "BatchExpanded"]
RunStatus = Literal["running", "completed", "partial", "aborted", "failed"]

ZERO_ADDRESS = Address("0x0000000000000000000000000000000000000000")
