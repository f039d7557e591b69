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

import base64
import hashlib
import json
import logging
import secrets
import string

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel

from dbplane.exceptions import DBPlaneException

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits
PASSWORD_LENGTH = 24


class RawCredentials(BaseModel):
    username: str
    password: str


class GeneratedCredentials(BaseModel):
    raw: RawCredentials
    encrypted_ref: str


class CredentialStore:
    """
    Generates database credentials and seals them into an opaque reference.

    Only the reference is ever persisted; the raw values exist in memory while
    a secret is being written to the platform.
    """

    def __init__(self, encryption_key: str):
        # Any configured string works as key material
        digest = hashlib.sha256(encryption_key.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    @staticmethod
    def generate_password(length: int = PASSWORD_LENGTH) -> str:
        return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))

    def generate(self, username: str = "admin") -> GeneratedCredentials:
        raw = RawCredentials(username=username, password=self.generate_password())
        return GeneratedCredentials(raw=raw, encrypted_ref=self.encrypt(raw))

    def encrypt(self, raw: RawCredentials) -> str:
        return self._fernet.encrypt(json.dumps(raw.model_dump()).encode("utf-8")).decode("ascii")

    def decrypt(self, encrypted_ref: str) -> RawCredentials:
        try:
            payload = self._fernet.decrypt(encrypted_ref.encode("ascii"))
        except (InvalidToken, ValueError) as e:
            logger.error("Credential reference could not be decrypted")
            raise DBPlaneException("Invalid credential reference") from e
        return RawCredentials.model_validate(json.loads(payload))
