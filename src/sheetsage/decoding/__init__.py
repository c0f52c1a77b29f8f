"""Recovery of typed records from malformed reasoner output."""

from sheetsage.decoding.decoder import decode, decode_json, reconstruct_fields
from sheetsage.decoding.passes import REPAIR_PASSES

__all__ = ["REPAIR_PASSES", "decode", "decode_json", "reconstruct_fields"]
