from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	# Seed teacher account for local development
	seed_username: str | None = Field(default=None, validation_alias="SEED_USERNAME")
	seed_password_plain: str | None = Field(default=None, validation_alias="SEED_PASSWORD")
	# Comma separated usernames that always act as teachers
	teacher_usernames: str = Field(default="", validation_alias="TEACHER_USERNAMES")

	# Schema limits
	max_mcq_choices: int = Field(default=12, validation_alias="MAX_MCQ_CHOICES")
	max_block_id_length: int = Field(default=80, validation_alias="MAX_BLOCK_ID_LENGTH")
	# Cap for the rendered text handed to the assessment collaborator
	assessment_text_limit: int = Field(default=4000, validation_alias="ASSESSMENT_TEXT_LIMIT")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
	# Bind address for the `lessonpace` command
	host: str = Field(default="127.0.0.1", validation_alias="HOST")
	port: int = Field(default=8000, validation_alias="PORT")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

	def teacher_set(self) -> set[str]:
		return {name.strip() for name in self.teacher_usernames.split(",") if name.strip()}

	def configured_teacher(self, username: str) -> bool:
		return username in self.teacher_set() or (bool(self.seed_username) and username == self.seed_username)

settings = Settings()
