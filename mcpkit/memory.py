"""A knowledge graph of entities, relations and observations, kept in a store."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol


class StoreError(Exception):
    """Raised when the backing store cannot be read or written."""


class EntityNotFoundError(LookupError):
    """Raised when an operation names an entity that is not in the graph."""

    def __init__(self, name: str) -> None:
        super().__init__(f"entity with name {name} not found")
        self.name = name

    def __str__(self) -> str:
        return self.args[0]


@dataclass
class Entity:
    """A node of the graph, with the facts observed about it."""

    name: str
    entity_type: str = ""
    observations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Relation:
    """A directed edge between two entities."""

    from_: str
    to: str
    relation_type: str


@dataclass
class Observation:
    """Facts about one entity: contents to add, or observations to delete."""

    entity_name: str
    contents: list[str] = field(default_factory=list)
    observations: list[str] = field(default_factory=list)


@dataclass
class KnowledgeGraph:
    """The entities and relations of the whole graph, or of a part of it."""

    entities: list[Entity] = field(default_factory=list)
    relations: list[Relation] = field(default_factory=list)


class Store(Protocol):
    def read(self) -> bytes: ...

    def write(self, data: bytes) -> None: ...


class MemoryStore:
    """Keeps the data in memory; it is lost when the process ends."""

    def __init__(self) -> None:
        self._data = b""

    def read(self) -> bytes:
        return self._data

    def write(self, data: bytes) -> None:
        self._data = bytes(data)


class FileStore:
    """Keeps the data in a file readable and writable by its owner only."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = os.fspath(path)

    def read(self) -> bytes:
        """Return the file's contents, or nothing if the file does not exist."""
        try:
            with open(self.path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return b""
        except OSError as exc:
            raise StoreError(f"failed to read file {self.path}: {exc}") from exc

    def write(self, data: bytes) -> None:
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
        except OSError as exc:
            raise StoreError(f"failed to write file {self.path}: {exc}") from exc


def _string(item: dict[str, Any], key: str) -> str:
    value = item.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"failed to unmarshal from store: {key} is not a string")
    return value


def _strings(item: dict[str, Any], key: str) -> list[str]:
    value = item.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"failed to unmarshal from store: {key} is not a list of strings")
    return list(value)


def _entity_item(entity: Entity) -> dict[str, Any]:
    item: dict[str, Any] = {"type": "entity"}
    if entity.name:
        item["name"] = entity.name
    if entity.entity_type:
        item["entityType"] = entity.entity_type
    if entity.observations:
        item["observations"] = list(entity.observations)
    return item


def _relation_item(relation: Relation) -> dict[str, Any]:
    item: dict[str, Any] = {"type": "relation"}
    if relation.from_:
        item["from"] = relation.from_
    if relation.to:
        item["to"] = relation.to
    if relation.relation_type:
        item["relationType"] = relation.relation_type
    return item


def _connected(entities: list[Entity], relations: Iterable[Relation]) -> KnowledgeGraph:
    """Return entities with the relations whose both ends are among them."""
    names = {entity.name for entity in entities}
    return KnowledgeGraph(
        entities=entities,
        relations=[r for r in relations if r.from_ in names and r.to in names],
    )


class KnowledgeBase:
    """Operations on a knowledge graph persisted in a store."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def load_graph(self) -> KnowledgeGraph:
        """Read the graph from the store; an empty store holds an empty graph."""
        try:
            data = self.store.read()
        except StoreError as exc:
            raise StoreError(f"failed to read from store: {exc}") from exc
        if not data:
            return KnowledgeGraph()
        try:
            items = json.loads(data)
        except ValueError as exc:
            raise ValueError(f"failed to unmarshal from store: {exc}") from exc
        if items is None:
            return KnowledgeGraph()
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            raise ValueError("failed to unmarshal from store: expected a list of objects")

        graph = KnowledgeGraph()
        for item in items:
            kind = _string(item, "type")
            if kind == "entity":
                graph.entities.append(Entity(
                    name=_string(item, "name"),
                    entity_type=_string(item, "entityType"),
                    observations=_strings(item, "observations"),
                ))
            elif kind == "relation":
                graph.relations.append(Relation(
                    from_=_string(item, "from"),
                    to=_string(item, "to"),
                    relation_type=_string(item, "relationType"),
                ))
        return graph

    def save_graph(self, graph: KnowledgeGraph) -> None:
        """Write the graph to the store as a list of typed items."""
        items = [_entity_item(e) for e in graph.entities]
        items += [_relation_item(r) for r in graph.relations]
        data = json.dumps(items, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        try:
            self.store.write(data)
        except StoreError as exc:
            raise StoreError(f"failed to write to store: {exc}") from exc

    def create_entities(self, entities: Iterable[Entity]) -> list[Entity]:
        """Add entities whose names are new; return those actually added."""
        graph = self.load_graph()
        names = {e.name for e in graph.entities}
        added: list[Entity] = []
        for entity in entities:
            if entity.name not in names:
                names.add(entity.name)
                added.append(entity)
                graph.entities.append(entity)
        self.save_graph(graph)
        return added

    def create_relations(self, relations: Iterable[Relation]) -> list[Relation]:
        """Add relations not already present; return those actually added."""
        graph = self.load_graph()
        existing = set(graph.relations)
        added: list[Relation] = []
        for relation in relations:
            if relation not in existing:
                existing.add(relation)
                added.append(relation)
                graph.relations.append(relation)
        self.save_graph(graph)
        return added

    def add_observations(self, observations: Iterable[Observation]) -> list[Observation]:
        """Append new contents to existing entities; return what was actually added."""
        graph = self.load_graph()
        by_name: dict[str, Entity] = {}
        for entity in graph.entities:
            by_name.setdefault(entity.name, entity)
        results: list[Observation] = []
        for obs in observations:
            entity = by_name.get(obs.entity_name)
            if entity is None:
                raise EntityNotFoundError(obs.entity_name)
            added: list[str] = []
            for content in obs.contents:
                if content not in entity.observations:
                    added.append(content)
                    entity.observations.append(content)
            results.append(Observation(entity_name=obs.entity_name, contents=added))
        self.save_graph(graph)
        return results

    def delete_entities(self, entity_names: Iterable[str]) -> None:
        """Remove the named entities and every relation touching them."""
        graph = self.load_graph()
        doomed = set(entity_names)
        graph.entities = [e for e in graph.entities if e.name not in doomed]
        graph.relations = [
            r for r in graph.relations if r.from_ not in doomed and r.to not in doomed
        ]
        self.save_graph(graph)

    def delete_observations(self, deletions: Iterable[Observation]) -> None:
        """Remove specific observations from entities; unknown entities are skipped."""
        graph = self.load_graph()
        for deletion in deletions:
            entity = next((e for e in graph.entities if e.name == deletion.entity_name), None)
            if entity is None:
                continue
            doomed = set(deletion.observations)
            entity.observations = [o for o in entity.observations if o not in doomed]
        self.save_graph(graph)

    def delete_relations(self, relations: Iterable[Relation]) -> None:
        """Remove the given relations from the graph."""
        graph = self.load_graph()
        doomed = set(relations)
        graph.relations = [r for r in graph.relations if r not in doomed]
        self.save_graph(graph)

    def search_nodes(self, query: str) -> KnowledgeGraph:
        """Return entities matching query, case-insensitively, and the relations between them."""
        graph = self.load_graph()
        needle = query.lower()

        def matches(entity: Entity) -> bool:
            return (
                needle in entity.name.lower()
                or needle in entity.entity_type.lower()
                or any(needle in o.lower() for o in entity.observations)
            )

        return _connected([e for e in graph.entities if matches(e)], graph.relations)

    def open_nodes(self, names: Iterable[str]) -> KnowledgeGraph:
        """Return the named entities and the relations between them."""
        graph = self.load_graph()
        wanted = set(names)
        return _connected([e for e in graph.entities if e.name in wanted], graph.relations)