# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import hashlib
import re
from typing import Any, Mapping

_UNSAFE_COLLECTION_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
MAX_COLLECTION_NAME = 255


def point_id_for(document_key: Any) -> int:
    """
    Numeric point id for a source document key.

    The first 6 bytes of the SHA-256 of the key's string form, read big-endian,
    so the id fits in 48 bits and is the same on every run.
    """
    digest = hashlib.sha256(str(document_key).encode("utf-8")).digest()
    return int.from_bytes(digest[:6], "big")


def target_collection_name(database: str, collection: str, index_name: str) -> str:
    name = _UNSAFE_COLLECTION_CHARS.sub("_", f"{database}_{collection}_{index_name}")
    return name[:MAX_COLLECTION_NAME]


def vector_name_for(path: str) -> str:
    return path.replace(".", "_")


def payload_key_for(path: str) -> str:
    return path.replace(".", "_")


def get_nested_value(document: Mapping, path: str) -> Any:
    value = document
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return None
        value = value[part]
    return value
