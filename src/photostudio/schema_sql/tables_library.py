"""CREATE TABLE statements for folders and generated images."""

FOLDERS = """
CREATE TABLE folders (
    folder_id   UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id     UUID NOT NULL REFERENCES users(user_id),
    name        VARCHAR(100) NOT NULL,
    description VARCHAR(500) NOT NULL DEFAULT '',
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT uq_folder_user_name UNIQUE (user_id, name)
);
"""

IMAGES = """
CREATE TABLE images (
    image_id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id           UUID NOT NULL REFERENCES users(user_id),
    folder_id         UUID REFERENCES folders(folder_id) ON DELETE SET NULL,
    url               VARCHAR(1000) NOT NULL,
    thumbnail_url     VARCHAR(1000),
    prompt            TEXT NOT NULL,
    generation_type   VARCHAR(30) NOT NULL
                      CONSTRAINT ck_image_generation_type
                      CHECK (generation_type IN ('product_with_model', 'product_only')),
    product_image_url VARCHAR(1000) NOT NULL,
    model_image_url   VARCHAR(1000),
    credits_used      INTEGER NOT NULL DEFAULT 0,
    metadata          JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [
    FOLDERS,
    IMAGES,
]
