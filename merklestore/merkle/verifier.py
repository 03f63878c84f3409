"""
Chunk Verifier

The single trust boundary on download: a chunk is accepted only if its bytes,
walked up through the node-supplied proof, reproduce the expected root.
Verification never raises; anything malformed is simply not valid.
"""

import hmac
import logging
from typing import Optional

from .tree import LEFT, RIGHT, MerkleProof, hash_leaf, hash_pair, path_shape

logger = logging.getLogger(__name__)


def verify_chunk(chunk_data: bytes, proof: MerkleProof, expected_root: str,
                 expected_index: Optional[int] = None) -> bool:
    """
    Check that `chunk_data` is leaf `proof.index` of the tree rooted at
    `expected_root`.

    The proof's step sides must match the shape implied by its
    (index, leaf_count); otherwise a node could answer a request for one
    chunk with a genuine proof for another.
    """
    try:
        if expected_index is not None and proof.index != expected_index:
            return False

        shape = [side for side in path_shape(proof.index, proof.leaf_count)
                 if side is not None]
        if len(shape) != len(proof.steps):
            return False

        current = hash_leaf(bytes(chunk_data))
        for step, side in zip(proof.steps, shape):
            if step.side != side:
                return False
            sibling = bytes.fromhex(step.sibling)
            if len(sibling) != len(current):
                return False
            if side == LEFT:
                current = hash_pair(sibling, current)
            elif side == RIGHT:
                current = hash_pair(current, sibling)

        return hmac.compare_digest(current.hex(), expected_root.lower())
    except (IndexError, ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Rejecting malformed proof: {e}")
        return False


class Verifier:
    """Validates chunks against a root hash, counting rejections."""

    def __init__(self):
        self.rejected = 0

    def verify(self, chunk_data: bytes, proof: MerkleProof, expected_root: str,
               expected_index: Optional[int] = None) -> bool:
        valid = verify_chunk(chunk_data, proof, expected_root, expected_index)
        if not valid:
            self.rejected += 1
        return valid
