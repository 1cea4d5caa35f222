from database import engine, Base
import models
from migrations.create_crawl_queue_indexes import migrate_create_crawl_queue_indexes

def init_db():
    Base.metadata.create_all(bind=engine)
    migrate_create_crawl_queue_indexes()
    print(f"Database initialized: {', '.join(sorted(Base.metadata.tables))}")

if __name__ == "__main__":
    init_db()
