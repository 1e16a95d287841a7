from aperture.cli import main
from aperture.storage import get_task, init_db, list_tasks


def _env(tmp_path, monkeypatch):
    monkeypatch.setenv("AP_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("AP_LOG_FILE", raising=False)
    return str(tmp_path / "state.sqlite3")


def _seed_file(tmp_path):
    path = tmp_path / "seed.yaml"
    path.write_text(
        'daily_words:\n  "2026-10-18":\n    new: [harbor]\n    review: [tide]\n',
        encoding="utf-8",
    )
    return str(path)


def test_migrate_seed_and_enqueue(tmp_path, monkeypatch):
    db_path = _env(tmp_path, monkeypatch)

    assert main(["db", "migrate"]) == 0
    assert main(["seed", "import", _seed_file(tmp_path)]) == 0
    assert main(["tasks", "enqueue", "--date", "2026-10-18", "--llm", "openai"]) == 0
    assert main(["tasks", "list", "--date", "2026-10-18"]) == 0

    tasks = list_tasks(init_db(db_path))
    assert len(tasks) == 1
    assert tasks[0].llm == "openai"
    assert tasks[0].trigger_source == "manual"


def test_enqueue_rejects_bad_date_and_missing_words(tmp_path, monkeypatch):
    _env(tmp_path, monkeypatch)

    assert main(["tasks", "enqueue", "--date", "18/10/2026"]) == 1
    assert main(["tasks", "enqueue", "--date", "2026-10-18"]) == 1
    assert main(["tasks", "enqueue", "--date", "2026-10-18", "--mode", "impression"]) == 1


def test_cancel_and_delete(tmp_path, monkeypatch):
    db_path = _env(tmp_path, monkeypatch)
    main(["seed", "import", _seed_file(tmp_path)])
    main(["tasks", "enqueue", "--date", "2026-10-18", "--mode", "impression", "--word-count", "3"])
    conn = init_db(db_path)
    task = list_tasks(conn)[0]
    assert task.params == {"word_count": 3}

    assert main(["tasks", "cancel", task.id]) == 0
    assert main(["tasks", "cancel", task.id]) == 1
    assert get_task(conn, task.id).status == "canceled"

    assert main(["tasks", "delete", task.id]) == 0
    assert main(["tasks", "delete", task.id]) == 1
    assert get_task(conn, task.id) is None


def test_seed_import_reports_bad_file(tmp_path, monkeypatch):
    _env(tmp_path, monkeypatch)

    assert main(["seed", "import", str(tmp_path / "missing.yaml")]) == 1
