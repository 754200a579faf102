from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from sqlite3 import Row
from uuid import uuid4

from tubedesc.repositories.common import load_str_list, optional_str, utc_now_iso
from tubedesc.repositories.database import Database

DEFAULT_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class TemplateRecord:
    id: str
    user_id: str
    name: str
    content: str


@dataclass(frozen=True)
class ContainerRecord:
    id: str
    user_id: str
    name: str
    separator: str
    template_order: tuple[str, ...]


@dataclass(frozen=True)
class VideoVariableRecord:
    video_id: str
    template_id: str
    variable_name: str
    variable_value: str


class CompositionRepository:
    """Templates, containers and per-video variable bindings."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create_template(self, *, user_id: str, name: str, content: str) -> TemplateRecord:
        template_id = f"tmpl_{uuid4().hex}"
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO templates (id, user_id, name, content, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (template_id, user_id, name, content, now_iso, now_iso),
            )
        return TemplateRecord(id=template_id, user_id=user_id, name=name, content=content)

    def get_template(self, template_id: str, *, user_id: str | None = None) -> TemplateRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM templates WHERE id = ? LIMIT 1",
                (template_id,),
            ).fetchone()
        if row is None:
            return None
        template = _row_to_template(row)
        if user_id is not None and template.user_id != user_id:
            return None
        return template

    def update_template(
        self,
        template_id: str,
        *,
        user_id: str,
        name: str | None = None,
        content: str | None = None,
    ) -> TemplateRecord | None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE templates
                SET name = COALESCE(?, name), content = COALESCE(?, content), updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (name, content, utc_now_iso(), template_id, user_id),
            )
        return self.get_template(template_id, user_id=user_id)

    def get_templates(self, template_ids: Iterable[str]) -> dict[str, TemplateRecord]:
        ids = list(dict.fromkeys(template_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM templates WHERE id IN ({placeholders})",
                ids,
            ).fetchall()
        return {str(row["id"]): _row_to_template(row) for row in rows}

    def create_container(
        self,
        *,
        user_id: str,
        name: str,
        template_order: list[str],
        separator: str = DEFAULT_SEPARATOR,
    ) -> ContainerRecord:
        container_id = f"cont_{uuid4().hex}"
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO containers
                (id, user_id, name, separator, template_order_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    container_id,
                    user_id,
                    name,
                    separator,
                    json.dumps(template_order),
                    now_iso,
                    now_iso,
                ),
            )
        return ContainerRecord(
            id=container_id,
            user_id=user_id,
            name=name,
            separator=separator,
            template_order=tuple(template_order),
        )

    def get_container(
        self,
        container_id: str,
        *,
        user_id: str | None = None,
    ) -> ContainerRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM containers WHERE id = ? LIMIT 1",
                (container_id,),
            ).fetchone()
        if row is None:
            return None
        container = _row_to_container(row)
        if user_id is not None and container.user_id != user_id:
            return None
        return container

    def get_containers(self, container_ids: Iterable[str]) -> dict[str, ContainerRecord]:
        ids = list(dict.fromkeys(container_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM containers WHERE id IN ({placeholders})",
                ids,
            ).fetchall()
        return {str(row["id"]): _row_to_container(row) for row in rows}

    def update_container(
        self,
        container_id: str,
        *,
        user_id: str,
        separator: str | None = None,
        template_order: list[str] | None = None,
    ) -> ContainerRecord | None:
        order_json = json.dumps(template_order) if template_order is not None else None
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE containers
                SET separator = COALESCE(?, separator),
                    template_order_json = COALESCE(?, template_order_json),
                    updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (separator, order_json, utc_now_iso(), container_id, user_id),
            )
        return self.get_container(container_id, user_id=user_id)

    def list_container_ids_using_template(self, template_id: str, *, user_id: str) -> list[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT containers.id
                FROM containers, json_each(containers.template_order_json) AS entry
                WHERE containers.user_id = ? AND entry.value = ?
                ORDER BY containers.created_at ASC
                """,
                (user_id, template_id),
            ).fetchall()
        return list(dict.fromkeys(str(row["id"]) for row in rows))

    def set_video_variables(
        self,
        *,
        video_id: str,
        template_id: str,
        values: Mapping[str, str],
    ) -> None:
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            for variable_name, variable_value in values.items():
                conn.execute(
                    """
                    INSERT INTO video_variables (
                        id, video_id, template_id, variable_name, variable_value,
                        created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(video_id, template_id, variable_name) DO UPDATE SET
                        variable_value = excluded.variable_value,
                        updated_at = excluded.updated_at
                    """,
                    (
                        f"var_{uuid4().hex}",
                        video_id,
                        template_id,
                        variable_name,
                        variable_value,
                        now_iso,
                        now_iso,
                    ),
                )

    def list_video_variables(self, video_ids: Iterable[str]) -> dict[str, list[VideoVariableRecord]]:
        ids = list(dict.fromkeys(video_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT video_id, template_id, variable_name, variable_value
                FROM video_variables
                WHERE video_id IN ({placeholders})
                ORDER BY created_at ASC, variable_name ASC
                """,
                ids,
            ).fetchall()

        grouped: dict[str, list[VideoVariableRecord]] = {}
        for row in rows:
            record = VideoVariableRecord(
                video_id=str(row["video_id"]),
                template_id=str(row["template_id"]),
                variable_name=str(row["variable_name"]),
                variable_value=optional_str(row["variable_value"]) or "",
            )
            grouped.setdefault(record.video_id, []).append(record)
        return grouped


def _row_to_template(row: Row) -> TemplateRecord:
    return TemplateRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        name=str(row["name"]),
        content=str(row["content"]),
    )


def _row_to_container(row: Row) -> ContainerRecord:
    return ContainerRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        name=str(row["name"]),
        separator=str(row["separator"]),
        template_order=tuple(load_str_list(row["template_order_json"])),
    )
