import os

DATA_DIR_ENV = "IMAGEVAULT_DATA_DIR"


def get_data_dir(base=None):
    # Explicit argument wins, then the environment, then ./data.
    data_dir = base or os.environ.get(DATA_DIR_ENV) or os.path.join(os.getcwd(), "data")
    os.makedirs(data_dir, exist_ok=True)
    return data_dir


def get_db_path(base=None):
    db_dir = os.path.join(get_data_dir(base), "db")
    os.makedirs(db_dir, exist_ok=True)
    return os.path.join(db_dir, "images.db")


def get_images_dir(base=None):
    return os.path.join(get_data_dir(base), "images")
