"""
Storage interfaces

The hosting service talks to a backend through two interfaces: projects CRUD
and grafeas CRUD (occurrences, notes and the vulnerability summary). Entities
are JSON dicts in their lowerCamelCase wire form.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from search.errors import StorageError

Entity = Dict[str, Any]


class ProjectStorage(ABC):
    """Projects CRUD"""

    @abstractmethod
    async def create_project(self, project_id: str, project: Entity) -> Entity:
        pass

    @abstractmethod
    async def get_project(self, project_id: str) -> Entity:
        pass

    @abstractmethod
    async def list_projects(
        self,
        filter: str = "",
        page_size: int = 0,
        page_token: str = "",
    ) -> Tuple[List[Entity], str]:
        """
        Returns:
            (projects, next_page_token)
        """
        pass

    @abstractmethod
    async def delete_project(self, project_id: str) -> None:
        pass


class GrafeasStorage(ABC):
    """Occurrence and note CRUD"""

    @abstractmethod
    async def get_occurrence(self, project_id: str, occurrence_id: str) -> Entity:
        pass

    @abstractmethod
    async def list_occurrences(
        self,
        project_id: str,
        filter: str = "",
        page_token: str = "",
        page_size: int = 0,
    ) -> Tuple[List[Entity], str]:
        pass

    @abstractmethod
    async def create_occurrence(self, project_id: str, user_id: str, occurrence: Entity) -> Entity:
        pass

    @abstractmethod
    async def batch_create_occurrences(
        self,
        project_id: str,
        user_id: str,
        occurrences: List[Entity],
    ) -> Tuple[List[Entity], List[StorageError]]:
        """
        Returns:
            (created occurrences, one error per failed occurrence)
        """
        pass

    @abstractmethod
    async def update_occurrence(
        self,
        project_id: str,
        occurrence_id: str,
        occurrence: Entity,
        update_mask: Optional[List[str]] = None,
    ) -> Entity:
        pass

    @abstractmethod
    async def delete_occurrence(self, project_id: str, occurrence_id: str) -> None:
        pass

    @abstractmethod
    async def get_note(self, project_id: str, note_id: str) -> Entity:
        pass

    @abstractmethod
    async def list_notes(
        self,
        project_id: str,
        filter: str = "",
        page_token: str = "",
        page_size: int = 0,
    ) -> Tuple[List[Entity], str]:
        pass

    @abstractmethod
    async def create_note(self, project_id: str, note_id: str, user_id: str, note: Entity) -> Entity:
        pass

    @abstractmethod
    async def batch_create_notes(
        self,
        project_id: str,
        user_id: str,
        notes: Dict[str, Entity],
    ) -> Tuple[List[Entity], List[StorageError]]:
        pass

    @abstractmethod
    async def update_note(
        self,
        project_id: str,
        note_id: str,
        note: Entity,
        update_mask: Optional[List[str]] = None,
    ) -> Entity:
        pass

    @abstractmethod
    async def delete_note(self, project_id: str, note_id: str) -> None:
        pass

    @abstractmethod
    async def get_occurrence_note(self, project_id: str, occurrence_id: str) -> Entity:
        pass

    @abstractmethod
    async def list_note_occurrences(
        self,
        project_id: str,
        note_id: str,
        filter: str = "",
        page_token: str = "",
        page_size: int = 0,
    ) -> Tuple[List[Entity], str]:
        pass

    @abstractmethod
    async def get_vulnerability_occurrences_summary(self, project_id: str, filter: str = "") -> Entity:
        pass
