import sys
import threading

from invite_media.adapters.database import Database


def test_readers_tolerate_concurrent_writers():
    db = Database()
    owner = db.create_user("owner")
    invitation = db.create_invitation(owner.id, "wedding")
    db.add_gallery_image(invitation.id, "https://cdn.example.com/gallery-image/a.webp")

    done = threading.Event()
    errors = []

    def write_rows():
        try:
            for i in range(2000):
                db.add_gallery_image("other", f"https://cdn.example.com/gallery-image/{i}.webp")
                if i % 50 == 0:
                    db.create_user(f"user-{i}")
                    db.create_invitation(owner.id, f"slug-{i}")
        finally:
            done.set()

    interval = sys.getswitchinterval()
    sys.setswitchinterval(1e-6)
    writer = threading.Thread(target=write_rows)
    try:
        writer.start()
        while not done.is_set():
            try:
                assert len(db.get_gallery_for_invitation(invitation.id)) == 1
                db.list_gallery_images()
                db.list_invitations()
                assert db.get_user_by_token(owner.token).id == owner.id
            except RuntimeError as exc:
                errors.append(exc)
                break
    finally:
        writer.join()
        sys.setswitchinterval(interval)

    assert errors == []
    assert len(db.list_gallery_images()) == 2001
