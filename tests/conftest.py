#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
pytest shared fixtures
"""

import asyncio
import os
import sys

import pytest

# project root on sys.path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from registry.models import CategorizedTask, Collections, TaskCategory, TestMapping, Team, Tester  # noqa: E402
from registry.store import MemoryDocumentStore  # noqa: E402


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def sample_rows():
    """Rows as read from a request workbook"""
    return [
        {"Request ID": "REQ-1", "Sample Name": "S1", "Description": "Tensile", "Variant": "A",
         "Due finish": "05/01/2024", "Priority": "Urgent"},
        {"Request ID": "REQ-1", "Sample Name": "S2", "Description": "Tensile", "Variant": "B",
         "Due finish": "03/01/2024"},
        {"Request ID": "REQ-2", "Sample Name": "S3", "Description": "-", "Variant": ""},
        {"Request ID": "REQ-2", "Sample Name": "S4", "Description": "Hardness", "Variant": "",
         "Purpose": "Sprint build"},
        {"Request ID": "REQ-3", "Sample Name": "REQ-3", "Description": "Hardness", "Variant": "X"},
    ]


@pytest.fixture
def personnel(store):
    """Two testers and one assistant stored in the roster"""
    people = [
        Tester(id="t1", name="Alice", team=Team.TESTERS),
        Tester(id="t2", name="Bob", team=Team.TESTERS),
        Tester(id="a1", name="Carol", team=Team.ASSISTANTS),
    ]

    async def seed():
        for person in people:
            await store.set(Collections.TESTERS, person.id, person.to_dict())

    asyncio.run(seed())
    return {p.id: p for p in people}


@pytest.fixture
def mappings():
    return [
        TestMapping(id="m1", description="Tensile", variant="A", header_group="Mech", header_sub="Tensile A", order=2),
        TestMapping(id="m2", description="Tensile", variant="B", header_group="Mech", header_sub="Tensile B", order=1),
        TestMapping(id="m3", description="Hardness", variant="", header_group="Chem", header_sub="Hard", order=0),
    ]


def add_group(store, request_id, tasks, category=TaskCategory.NORMAL):
    """Store a pool group and return its document id"""
    group = CategorizedTask(request_id=request_id, tasks=tasks, category=category)
    return asyncio.run(store.add(Collections.CATEGORIZED_TASKS, group.to_dict()))
