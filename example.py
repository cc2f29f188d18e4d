"""Example usage of the typed_orm library."""

from typed_orm import Database, op

# Define tables and relationships using the DSL
schema = """
table person {
    id: int auto primary
    first_name: string
    last_name: string
}

table project lock {
    id: int auto primary
    name: string unique
    manager_id: int nullable -> person as manager reverse managed_projects
    budget: float nullable
}

table milestone {
    id: int auto primary
    name: string
    project_id: int -> project
}

association team_member_project_assn {
    team_member_id -> person as team_members
    project_id -> project as projects
}
"""

# Parse the schema; the database keeps its rows in memory
with Database.from_schema(schema) as db:
    print("Creating people and projects...")
    alice = db.new("person", first_name="Alice", last_name="Smith")
    bob = db.new("person", first_name="Bob", last_name="Jones")

    website = db.new("project", name="Website", budget=1200.0)
    website.set_reference("manager", alice)
    website.set_reverse("milestones", [db.new("milestone", name="Design"), db.new("milestone", name="Launch")])
    website.set_many("team_members", [alice, bob])
    website.save()
    print(f"  Saved: {website} (lock token {website.lock_token})")

    # Query projects together with their manager and team
    project = db.node("project")
    print("\nProjects with their teams:")
    records = (
        db.query("project")
        .select(project["manager"], project["team_members"])
        .order_by(project["name"])
        .load()
    )
    for record in records:
        manager = record.reference("manager")
        team = ", ".join(m["first_name"] for m in record.many("team_members"))
        print(f"  {record['name']}: managed by {manager['first_name']}, team {team}")

    # Count milestones per project with a calculation
    print("\nMilestones per project:")
    rows = (
        db.query("project")
        .group_by(project["id"], project["name"])
        .calculation(project, "milestone_count", op.count(project["milestones"]))
        .load()
    )
    for row in rows:
        print(f"  {row['name']}: {row.alias('milestone_count')}")

    # Deleting the project deletes its milestones and clears its team links
    website.delete()
    print(f"\nAfter delete: {db.query('milestone').count()} milestone(s) left")
