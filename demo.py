#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
tablemap walkthrough (SQLite)

Commands:
  migrate             Create or reconcile the t_users table
  create              Single, selected/omitted, batch, hook-skipping and mapping inserts
  query               first/take/last, key lookups, conditions, select/order/limit, raw
  update              save, update, updates vs updates_nonzero, select/omit, global guard
  delete              Soft delete, delete by key, batch delete, unscoped restore
  transaction         Managed and manual transactions, including a key conflict
  logs                Recent statements from the operation_log trace table (--trace)
  all                 Run every group in order

Notes:
- Settings come from --config (YAML). Table names get the "t_" prefix unless
  the config says otherwise.
- A before_create hook sets age to 20 when it is left at 0.
"""

import argparse
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from tablemap import (
    MissingFilterError,
    RecordNotFound,
    TableMapError,
    column,
    load_settings,
    open_db,
    register_hook,
)


@dataclass
class User:
    id: int = 0
    name: str = column("", size=64, index=True)
    email: Optional[str] = column(None, db_default="default@gmail.com")
    age: int = 0
    birthday: Optional[datetime] = None
    member_number: Optional[str] = None
    activated_at: Optional[datetime] = None
    created_at: int = column(0, auto_create_time=True)
    update_on: int = column(0, auto_update_time=True)
    is_deleted: int = column(0, soft_delete="flag")


def default_age(session, user: User) -> None:
    if user.age == 0:
        user.age = 20


register_hook(User, "before_create", default_age)


def open_session(args, settings):
    if not settings.naming.table_prefix:
        settings.naming.table_prefix = "t_"
    if args.trace:
        settings.logging.trace_table = True
    return open_db(settings, dsn=args.dsn)


# ---------------- Commands ----------------

def cmd_migrate(db):
    applied = db.auto_migrate(User)
    print(f"migrate: {len(applied)} statement(s) applied")


def cmd_create(db):
    now = datetime.now()
    user = User(name="sharpe-x", age=18, birthday=now)
    res = db.create(user)
    print(f"create: id={user.id} rows={res.rows_affected}")

    # only name/age/update_on are inserted; birthday and email fall back to column defaults
    user2 = User(name="sharpe-x-2", age=19, birthday=now, email="test@gmail.com")
    db.select("Name", "Age", "UpdateOn").create(user2)
    # everything except name/age/update_on
    user3 = User(name="sharpe-x-3", age=19, birthday=now)
    db.omit("Name", "Age", "UpdateOn").create(user3)

    users = [User(name=f"sharpe{i}") for i in range(1, 4)]
    db.create(users)
    print("batch ids:", [u.id for u in users])

    batch = [User(name=f"sharpe-batches-{i}") for i in range(1, 7)]
    db.create_in_batches(batch, 2)
    print("batches ids:", [u.id for u in batch])

    skip = User(name="sharpe-skip-hook", email="test@gmail.com")
    db.session(skip_hooks=True).create(skip)
    print(f"skip hooks: age={skip.age}")

    # mappings: no hooks, no timestamps, no key write-back
    db.model(User).create({"Name": "sharpe-map", "Age": 28})
    res = db.model(User).create_in_batches([
        {"Name": "sharpe-map-batches-1", "Age": 23},
        {"Name": "sharpe-map-batches-2", "Age": 24},
        {"Name": "sharpe-map-batches-3", "Age": 25, "UpdateOn": int(datetime.now().timestamp())},
        {"Name": "sharpe-map-batches-4", "CreatedAt": int(datetime.now().timestamp())},
    ], 2)
    print(f"map batches: rows={res.rows_affected}")


def cmd_query(db):
    try:
        print("first:", db.first(User))
    except RecordNotFound:
        print("first: RecordNotFound")
        return
    print("take:", db.take(User))
    print("last:", db.last(User))
    print("model last as mapping:", db.model(User).last(dict))

    try:
        print("by key 10:", db.first(User, 10))
    except RecordNotFound:
        print("primary key 10: RecordNotFound")

    print("keys [1, 2, 3]:", len(db.find(User, [1, 2, 3])))
    print("keys [200, 201]:", len(db.find(User, [200, 201])))
    print("all:", len(db.find(User)))

    print("name = sharpe-batches-3:", db.where("name = ?", "sharpe-batches-3").find(User))
    print("name <> sharpe-batches-3:", len(db.where("name <> ?", "sharpe-batches-3").find(User)))
    print("name in (...):", len(db.where("name in ?", ["sharpe-batches-1", "sharpe-skip-hook"]).find(User)))

    # records skip zero fields; mappings keep them
    print("record age=20:", len(db.where(User(age=20)).find(User)))
    print("record age=0 (no filter):", len(db.where(User(age=0)).find(User)))
    filters = {"Age": 0, "Name": "sharpe-skip-hook"}
    print("mapping age=0:", len(db.where(filters).find(User)))
    try:
        print("named field age:", db.where_nonzero(User(name="lala"), "Age").first(User))
    except RecordNotFound:
        print("named field age: RecordNotFound")
    print("inline mapping:", len(db.find(User, filters)))

    for i, row in enumerate(db.model(User).select("name").where(filters).find(dict)):
        print(f"{i} := {row}")

    print("order age desc, name:", db.order("age desc, name").first(User))
    print("order chained:", db.order("age desc").order("name").first(User))
    print("limit 10 offset 5:", len(db.limit(10).offset(5).find(User)))
    print("names via table:", db.table("t_users").select("name").limit(5).scalars())
    print("raw:", db.raw("SELECT name, age FROM t_users WHERE age > ?", 20).find(dict))
    print("distinct ages:", db.model(User).distinct("age").order("age").scalars())


def cmd_update(db):
    user = db.first(User)
    user.name = "jinzhu 2"
    user.age = 100
    db.save(user)

    db.model(User).where("name = ?", "sharpe1").update("age", 33)
    db.model(user).update("name", "hello")

    # updates_nonzero leaves zero fields alone, updates writes them
    db.model(user).updates_nonzero(User(name="hello-nz", age=0))
    db.model(user).updates({"name": "hello-map", "age": 0})

    db.model(user).select("name").updates({"name": "hello-select", "age": 18})
    db.model(user).omit("name").updates({"name": "skipped", "age": 19})
    db.model(user).select("*").omit("name").updates_nonzero(User(age=21))

    res = db.model(User).where("age = ?", 20).updates({"member_number": "M-20"})
    print(f"batch update: rows={res.rows_affected}")
    try:
        db.model(User).update("name", "everyone")
    except MissingFilterError as e:
        print("global update refused:", e)
    res = db.session(allow_global_update=True).model(User).update("activated_at", datetime.now())
    print(f"global update: rows={res.rows_affected}")

    res = db.exec("UPDATE t_users SET member_number = ? WHERE name IN ?", "vip", ["sharpe2", "sharpe3"])
    print(f"exec: rows={res.rows_affected}")
    print("after update:", db.first(User, user.id))


def cmd_delete(db):
    victim = db.last(User)
    db.delete(victim)
    print(f"soft deleted id={victim.id} flag={victim.is_deleted}")

    db.delete(User, 10)
    db.delete(User, [1, 2, 3])
    res = db.where("email LIKE ?", "%test%").delete(User)
    print(f"batch delete: rows={res.rows_affected}")

    print("visible:", db.model(User).count(), "all:", db.unscoped().model(User).count())
    print("deleted rows:", db.unscoped().where("is_deleted <> ?", 0).model(User).pluck("id"))

    # restore
    db.unscoped().model(User).where("id = ?", victim.id).update("is_deleted", 0)
    print("restored:", db.first(User, victim.id).name)


def cmd_transaction(db):
    def create_pair(tx):
        tx.create(User(name="tx-1"))
        tx.create(User(name="tx-2"))

    db.transaction(create_pair)
    print("managed commit:", db.where("name LIKE ?", "tx-%").model(User).count())

    def fail(tx):
        tx.create(User(name="tx-rolled-back"))
        raise RuntimeError("abort")

    try:
        db.transaction(fail)
    except RuntimeError:
        print("managed rollback:", db.where("name = ?", "tx-rolled-back").model(User).count())

    existing = db.first(User)
    tx = db.begin()
    try:
        tx.create(User(name="manual"))
        tx.create(User(id=existing.id, name="conflict"))
        tx.commit()
    except TableMapError as e:
        tx.rollback()
        print("manual rollback:", e)
    print("manual rows:", db.where("name = ?", "manual").model(User).count())


def cmd_logs(db):
    if not db.settings.logging.trace_table:
        print("logs: tracing is off (run with --trace)")
        return
    total, items = db.search_logs(size=10)
    print(f"logs: {total} traced statement(s), newest first")
    for it in items:
        print(f"  {it['ts']} {it['action']:<12} {it['result']:<5} {it['rows_affected']} {it['sql_text']}")
    creates, _ = db.search_logs(action="CREATE", size=1)
    print(f"logs: {creates} CREATE statement(s)")


COMMANDS = {
    "migrate": cmd_migrate,
    "create": cmd_create,
    "query": cmd_query,
    "update": cmd_update,
    "delete": cmd_delete,
    "transaction": cmd_transaction,
    "logs": cmd_logs,
}


def cmd_all(db):
    for name, fn in COMMANDS.items():
        print(f"\n=== {name} ===")
        fn(db)


# ---------------- Entry ----------------

def main():
    parser = argparse.ArgumentParser(description="tablemap walkthrough (SQLite)")
    parser.add_argument("--config", default=None, help="YAML settings (default ./config/config.yaml)")
    parser.add_argument("--dsn", default=None, help="override the configured database")
    parser.add_argument("-v", "--verbose", action="store_true", help="log every statement")
    parser.add_argument("--trace", action="store_true", help="persist statements to operation_log")
    sub = parser.add_subparsers()
    for name, fn in COMMANDS.items():
        p = sub.add_parser(name, help=f"run the {name} examples")
        p.set_defaults(func=fn)
    p_all = sub.add_parser("all", help="run every group")
    p_all.set_defaults(func=cmd_all)

    args = parser.parse_args()
    if not hasattr(args, "func"):
        parser.print_help()
        return
    try:
        settings = load_settings(args.config)
    except TableMapError as e:
        print("[ERROR]", e, file=sys.stderr)
        raise SystemExit(1)
    # levels are set once here; the library only emits records
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("tablemap").setLevel(logging.DEBUG if args.verbose else settings.logging.level.upper())

    try:
        db = open_session(args, settings)
    except TableMapError as e:
        print("[ERROR]", e, file=sys.stderr)
        raise SystemExit(1)
    try:
        if args.func is not cmd_migrate:
            cmd_migrate(db)
        args.func(db)
    except TableMapError as e:
        print("[ERROR]", e, file=sys.stderr)
        raise SystemExit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
