from collections.abc import Iterable

from .image import DiffRecord, LayerChain


def resolve_chains(
    history: Iterable[DiffRecord], group_by_tag: bool = False
) -> list[LayerChain]:
    """
    Group an image history (oldest diff first) into the chains which
    become the output layers.

    Without tag grouping every diff is a chain of its own. With tag grouping
    a chain is closed by each tagged diff, untagged diffs are merged into the
    next tagged one. The last diff always closes the pending chain.
    """
    records = list(history)
    chains: list[LayerChain] = []
    pending: list[str] = []
    for i, record in enumerate(records):
        pending.append(record.id)
        if not group_by_tag or record.tags or i == len(records) - 1:
            chains.append(LayerChain(diff_ids=tuple(pending)))
            pending = []
    return chains
