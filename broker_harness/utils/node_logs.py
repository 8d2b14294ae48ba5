"""
Persisted node log locations
"""
import os


def node_log_path(log_dir: str, test_name: str, run_id: str, node_name: str) -> str:
    return os.path.join(log_dir, test_name, f"{run_id}-{node_name}.log")


def write_node_log(log_dir: str, test_name: str, run_id: str, node_name: str, text: str) -> str:
    """Write a node's captured output under <log_dir>/<test_name>/ and return the path"""
    path = node_log_path(log_dir, test_name, run_id, node_name)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        f.write(text)
    return path
