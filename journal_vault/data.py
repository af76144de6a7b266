import uuid
from typing import Optional, Any
from datetime import datetime, date, timezone
from collections.abc import Iterator, Mapping, MutableMapping
import jsonpickle


class SessionData(MutableMapping[str, Any]):
    """Session-scoped dict-like store.

    Holds the ephemeral tier of the key cache: short-lived values that
    survive a reload within one session (through ``encode``/``decode``)
    but never leave it. Only serializable values are accepted, since
    anything stored here must come back after a snapshot restore.
    """

    _internal_attrs = frozenset({
        '_data', '_changed', '_id_', '_new', '_max_age', '_created', '_now'
    })

    def __init__(
        self,
        data: Optional[Mapping[str, Any]] = None,
        *,
        new: bool = False,
        id: Optional[str] = None,
        max_age: Optional[int] = None,
        created: Optional[int] = None
    ) -> None:
        object.__setattr__(self, '_data', {})
        object.__setattr__(self, '_changed', True if new else False)
        self._id_ = id or uuid.uuid4().hex
        self._new = new if data else True
        self._max_age = max_age or None
        now = int(datetime.now(timezone.utc).timestamp())
        self._now = now
        age = now - created if created else 0
        if max_age is not None and age > max_age:
            # session expired, start over
            data = None
            created = None
            self._new = True
        self._created = created or now
        if data:
            for key, value in data.items():
                self._set_value(key, value)
            self._changed = bool(new)

    def __repr__(self) -> str:
        return (
            f'<Vault-Session [new:{self.new}, created:{self.created}] '
            f'keys={list(self._data.keys())}>'
        )

    # --- Serialization helpers ---

    def _is_serializable(self, value: Any) -> bool:
        """Check if a value can be restored from a session snapshot."""
        if value is None or isinstance(value, (bool, int, float, str, bytes)):
            return True
        if isinstance(value, dict):
            return all(
                isinstance(k, str) and self._is_serializable(v)
                for k, v in value.items()
            )
        if isinstance(value, (list, tuple)):
            return all(self._is_serializable(v) for v in value)
        if isinstance(value, (datetime, date)):
            return True
        return False

    def _set_value(self, key: str, value: Any) -> None:
        if not self._is_serializable(value):
            raise TypeError(
                f"Session value for {key!r} is not serializable: "
                f"{type(value).__name__}"
            )
        self._data[key] = value
        self._changed = True

    # --- Properties ---

    @property
    def new(self) -> bool:
        return self._new

    @property
    def session_id(self) -> str:
        return self._id_

    @property
    def created(self) -> int:
        return self._created

    @property
    def empty(self) -> bool:
        return not bool(self._data)

    @property
    def max_age(self) -> Optional[int]:
        return self._max_age

    @max_age.setter
    def max_age(self, value: Optional[int]) -> None:
        self._max_age = value

    @property
    def expired(self) -> bool:
        if self._max_age is None:
            return False
        now = int(datetime.now(timezone.utc).timestamp())
        return now - self._created > self._max_age

    @property
    def is_changed(self) -> bool:
        return self._changed

    @is_changed.setter
    def is_changed(self, value: bool) -> None:
        self._changed = value

    def session_data(self) -> dict:
        return self._data

    def invalidate(self) -> None:
        """Clear all session data."""
        self._changed = True
        self._data = {}

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._set_value(key, value)

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._changed = True

    def __setattr__(self, key: str, value: Any) -> None:
        if (
            key in self._internal_attrs
            or key.startswith('_')
            or isinstance(getattr(type(self), key, None), property)
        ):
            object.__setattr__(self, key, value)
        else:
            raise AttributeError(
                f"Use item access to store session values ({key!r})"
            )

    # --- Snapshots ---

    def encode(self) -> str:
        """encode

            Snapshot the session using jsonpickle.

        Raises:
            RuntimeError: Error converting data to json.

        Returns:
            str: json version of the session.
        """
        payload = {
            'id': self._id_,
            'created': self._created,
            'data': self._data,
        }
        try:
            return jsonpickle.encode(payload)
        except Exception as err:
            raise RuntimeError(err) from err

    @classmethod
    def decode(cls, snapshot: str, max_age: Optional[int] = None) -> 'SessionData':
        """decode.

            Restore a session from a snapshot made by ``encode``.
        Args:
            snapshot (str): jsonpickle payload.
            max_age (int): session lifetime in seconds; an older
              snapshot restores as an empty, new session.

        Raises:
            RuntimeError: Error converting data from json.
        """
        try:
            payload = jsonpickle.decode(snapshot)
        except Exception as err:
            raise RuntimeError(err) from err
        if not isinstance(payload, dict):
            raise RuntimeError(f"Invalid session snapshot: {type(payload).__name__}")
        return cls(
            data=payload.get('data') or {},
            id=payload.get('id'),
            created=payload.get('created'),
            max_age=max_age,
        )
