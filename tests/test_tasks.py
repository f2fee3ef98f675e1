# tests/test_tasks.py

def success_task(options):
    """A simple handler that succeeds."""
    return {"sum": options["a"] + options["b"]}

def failure_task(options):
    """A handler that is designed to fail."""
    raise ValueError("This task is designed to fail")

def side_effect_task(options):
    """A handler that writes to a file to check for side effects."""
    with open(options["path"], "w") as f:
        f.write(options["content"])
