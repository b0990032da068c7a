"""Locate every document a user owns in a registered collection."""

from __future__ import annotations

from typing import Dict, List

from receiptgold.models.collections import CollectionSpec
from receiptgold.models.enums import DocumentKey
from receiptgold.services.document_store import DocumentSnapshot, DocumentStore
from receiptgold.utils.helpers import is_usage_doc_id


async def find_user_documents(
    store: DocumentStore,
    spec: CollectionSpec,
    user_id: str,
    *,
    include_holder: bool = True,
) -> List[DocumentSnapshot]:
    """Union of the documents keyed to ``user_id`` by field, doc id or id prefix.

    With ``include_holder`` the collection's account holder field is matched
    as well.  Results are de-duplicated and ordered by document id.
    """
    found: Dict[str, DocumentSnapshot] = {}
    if DocumentKey.FIELD in spec.keys:
        for snap in await store.query(spec.name).where(spec.user_field, "==", user_id).get():
            found[snap.id] = snap
    if DocumentKey.DOC_ID in spec.keys:
        data = await store.get(spec.name, user_id)
        if data is not None:
            found[user_id] = DocumentSnapshot(spec.name, user_id, data)
    if DocumentKey.DOC_ID_PREFIX in spec.keys:
        for snap in await store.query(spec.name).id_prefix(f"{user_id}_").get():
            if not is_usage_doc_id(snap.id, user_id):
                continue
            found[snap.id] = snap
    if include_holder and spec.holder_field:
        for snap in await store.query(spec.name).where(spec.holder_field, "==", user_id).get():
            found[snap.id] = snap
    return [found[key] for key in sorted(found)]


__all__ = ["find_user_documents"]
