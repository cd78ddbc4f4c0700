"""方言別 UPSERT 文の組み立て (MySQL本番 / SQLiteテスト / PostgreSQL)"""
from typing import Any, Iterable, Sequence

from sqlalchemy import Table
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.orm import Session


def build_upsert(
    db: Session,
    table: Table,
    rows: dict | list[dict],
    conflict_columns: Sequence[str],
    update_columns: Iterable[str] = (),
    update_exprs: Sequence[tuple[str, Any]] = (),
):
    """INSERT ... ON CONFLICT/ON DUPLICATE KEY UPDATE を返す

    Args:
        update_columns: 挿入しようとした値で上書きする列
        update_exprs: (列名, SQL式) の順序付きリスト。式の中の table.c.xxx は既存行の値を参照する。
            MySQL は左から順に代入するため、既存値を参照する式は update_columns より先に評価される
    """
    dialect = db.get_bind().dialect.name

    if dialect == "mysql":
        stmt = mysql.insert(table).values(rows)
        assignments = list(update_exprs)
        assignments += [(col, stmt.inserted[col]) for col in update_columns]
        return stmt.on_duplicate_key_update(assignments)

    if dialect == "postgresql":
        stmt = postgresql.insert(table).values(rows)
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).values(rows)
    else:
        raise NotImplementedError(f"UPSERT未対応のDB方言です: {dialect}")

    set_ = dict(update_exprs)
    set_.update({col: stmt.excluded[col] for col in update_columns})
    return stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=set_)
