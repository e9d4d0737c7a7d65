from typing import Any, Dict, Iterable, Type, TypeVar

from sqlalchemy.orm import Session

ModelT = TypeVar('ModelT')


class BaseRepository:
    def __init__(self, db: Session):
        self.db = db

    def _upsert(
        self,
        model: Type[ModelT],
        key: Any,
        values: Dict[str, Any],
        immutable: Iterable[str] = (),
        flush: bool = True
    ) -> ModelT:
        """Insert `values` as a new row, or update the row at primary key `key`.

        Columns named in `immutable` keep their inserted value.
        """
        record = self.db.get(model, key)
        if record is None:
            record = model(**values)
            self.db.add(record)
        else:
            for column, value in values.items():
                if column in immutable:
                    continue
                setattr(record, column, value)
        if flush:
            self.db.flush()
        return record
