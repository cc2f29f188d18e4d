"""Shared schema and fixtures for the typed_orm tests."""

import pytest

from typed_orm import Database

# Pairs of tables covering each relationship shape:
#   root_n/leaf_n     nullable forward reference
#   root_nn/leaf_nn   required forward reference
#   root_u/leaf_u     required unique forward reference
#   root_un/leaf_un   nullable unique forward reference
#   root_ul/leaf_ul   nullable unique forward reference between locked tables
SCHEMA = """
table root_n {
    id: int auto primary
    name: string
}

table leaf_n {
    id: int auto primary
    name: string
    root_n_id: int nullable -> root_n
}

table root_nn {
    id: int auto primary
    name: string
}

table leaf_nn {
    id: int auto primary
    name: string
    root_nn_id: int -> root_nn
}

table root_u {
    id: int auto primary
    name: string
}

table leaf_u {
    id: int auto primary
    name: string
    root_u_id: int unique -> root_u
}

table root_un {
    id: int auto primary
    name: string
}

table leaf_un {
    id: int auto primary
    name: string
    root_un_id: int nullable unique -> root_un
}

table root_ul lock {
    id: int auto primary
    name: string
}

table leaf_ul lock {
    id: int auto primary
    name: string
    root_ul_id: int nullable unique -> root_ul
}

table person {
    id: int auto primary
    first_name: string
    last_name: string
}

table project lock {
    id: int auto primary
    num: int unique
    name: string
    status: string default "open"
    manager_id: int nullable -> person as manager reverse managed_projects
    budget: float nullable
    spent: float nullable
}

table milestone {
    id: int auto primary
    name: string
    project_id: int -> project
}

table task {
    id: int auto primary
    title: string
    milestone_id: int -> milestone
}

table login {
    id: int auto primary
    username: string unique
    person_id: int nullable unique -> person
}

table two_key {
    server: string primary
    directory: string primary
    file_name: string
}

association team_member_project_assn {
    team_member_id -> person as team_members
    project_id -> project as projects
}
"""

PEOPLE = [
    ("Alice", "Smith"),
    ("Bob", "Jones"),
    ("Carol", "Smith"),
    ("Dan", "Brown"),
]

# num, name, status, manager, budget, spent, team, milestones
PROJECTS = [
    (1, "ACME Website", "open", "Alice", 1000.0, 400.0, ["Alice", "Bob", "Carol"],
     ["Design", "Build", "Launch"]),
    (2, "HR System", "closed", "Bob", 500.0, 600.0, ["Bob", "Dan"], ["Plan"]),
    (3, "Muffin Recipes", "open", "Alice", None, None, [], []),
    (4, "Hidden Project", "cancelled", None, 200.0, 50.0, ["Carol"], []),
]


@pytest.fixture
def db():
    """Create an empty in-memory database with the test schema."""
    with Database.from_schema(SCHEMA) as database:
        yield database


@pytest.fixture
def sample(db):
    """Fill the database with people, projects, teams and milestones.

    People get ids 1-4 and projects ids 1-4 in the order listed above.
    """
    people = {}
    for first, last in PEOPLE:
        person = db.new("person", first_name=first, last_name=last)
        person.save()
        people[first] = person

    for num, name, status, manager, budget, spent, team, milestones in PROJECTS:
        project = db.new("project", num=num, name=name, status=status, budget=budget, spent=spent)
        if manager is not None:
            project.set_reference("manager", people[manager])
        project.set_many("team_members", [people[n] for n in team])
        project.set_reverse("milestones", [db.new("milestone", name=m) for m in milestones])
        project.save()
    return db
