"""Term lists and rule tables used by code search and issue analysis.

Everything here is plain data plus a few lookup helpers; the scoring
logic lives in search.py and analysis.py.
"""

import re

# =============================================================================
# Corpus Selection
# =============================================================================

CODE_EXTENSIONS = frozenset([
    ".ts", ".tsx", ".js", ".jsx", ".py", ".java", ".cs", ".go", ".rs", ".php", ".rb",
    ".cpp", ".c", ".h", ".css", ".scss", ".html", ".json", ".yaml", ".yml", ".md",
    ".sql", ".sh", ".dockerfile",
])

# Hidden directories are skipped as well
EXCLUDE_DIRS = frozenset([
    "node_modules", ".git", ".next", "dist", "build", "coverage", ".turbo",
    "target", "vendor", "__pycache__", ".vscode", ".idea",
])

LANGUAGE_MAP = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "py": "python",
    "java": "java",
    "cs": "csharp",
    "go": "go",
    "rs": "rust",
    "php": "php",
    "rb": "ruby",
    "cpp": "cpp",
    "c": "c",
    "h": "c",
    "css": "css",
    "scss": "scss",
    "html": "html",
    "json": "json",
    "xml": "xml",
    "yaml": "yaml",
    "yml": "yaml",
    "md": "markdown",
    "sql": "sql",
    "sh": "bash",
    "dockerfile": "dockerfile",
}

# =============================================================================
# Code Search Vocabulary
# =============================================================================

SEARCH_TERMS = [
    # Programming concepts
    "function", "class", "interface", "component", "method", "variable", "constant",
    "async", "await", "promise", "callback", "event", "handler", "listener",
    "state", "props", "context", "hook", "effect", "reducer", "action",

    # Common issues
    "error", "bug", "crash", "fail", "exception", "timeout", "memory", "leak",
    "performance", "slow", "optimization", "bottleneck", "deadlock",

    # Technologies
    "react", "typescript", "javascript", "node", "express", "api", "database",
    "sql", "mongodb", "redis", "auth", "authentication", "authorization",
    "test", "testing", "jest", "cypress", "docker", "kubernetes",

    # File types and patterns
    "config", "configuration", "env", "environment", "package", "dependency",
    "route", "middleware", "controller", "service", "util", "helper",
]

SEARCH_TERM_SET = frozenset(SEARCH_TERMS)

# =============================================================================
# Issue Analysis Vocabulary
# =============================================================================

ANALYSIS_TERMS = [
    # Languages & frameworks
    "javascript", "typescript", "react", "node", "python", "java", "c#", "go", "rust",
    "angular", "vue", "svelte", "next.js", "express", "fastapi", "spring", "django",

    # Issues & problems
    "bug", "error", "crash", "fail", "broken", "issue", "problem", "exception",
    "memory leak", "performance", "slow", "timeout", "deadlock", "race condition",

    # Security
    "security", "vulnerability", "xss", "sql injection", "csrf", "authentication",
    "authorization", "oauth", "jwt", "encryption", "ssl", "tls",

    # DevOps & infrastructure
    "docker", "kubernetes", "aws", "azure", "gcp", "ci/cd", "pipeline", "deployment",
    "database", "redis", "mongodb", "postgresql", "mysql", "elasticsearch",

    # Testing
    "test", "testing", "unit test", "integration test", "e2e", "jest", "cypress",
    "selenium", "coverage", "mock", "stub",
]

# Topic buckets matched by substring against the lowercased statement
CONTEXT_BUCKETS = {
    "debugging": ["debug", "error", "bug", "crash", "fail", "broken", "exception", "stack trace"],
    "performance": ["slow", "performance", "optimize", "speed", "memory", "cpu", "bottleneck"],
    "security": ["security", "vulnerability", "hack", "breach", "auth", "permission", "encrypt"],
    "testing": ["test", "testing", "coverage", "mock", "unit", "integration", "e2e"],
    "deployment": ["deploy", "build", "ci/cd", "pipeline", "docker", "kubernetes", "production"],
    "database": ["database", "sql", "query", "migration", "schema", "index", "transaction"],
    "api": ["api", "endpoint", "rest", "graphql", "webhook", "integration", "service"],
    "frontend": ["ui", "ux", "component", "render", "dom", "css", "responsive", "browser"],
    "backend": ["server", "backend", "microservice", "architecture", "scalability", "load"],
}

# =============================================================================
# Suggestion Templates
# =============================================================================

AUTH_TIMEOUT_CODE = """\
// Enhanced JWT token handling with timeout
import jwt from 'jsonwebtoken'

export const verifyTokenWithTimeout = async (token: string, timeout = 30000) => {
  return new Promise((resolve, reject) => {
    const timer = setTimeout(() => {
      reject(new Error('Token verification timeout'))
    }, timeout)

    try {
      const decoded = jwt.verify(token, process.env.JWT_SECRET!)
      clearTimeout(timer)
      resolve(decoded)
    } catch (error) {
      clearTimeout(timer)
      reject(error)
    }
  })
}

// Middleware with timeout handling
export const authMiddleware = async (req: Request, res: Response, next: NextFunction) => {
  try {
    const token = req.headers.authorization?.replace('Bearer ', '')
    if (!token) throw new Error('No token provided')

    const user = await verifyTokenWithTimeout(token)
    req.user = user
    next()
  } catch (error) {
    res.status(401).json({ error: 'Authentication failed', details: error.message })
  }
}"""

REACT_RENDER_CODE = """\
import React, { memo, useMemo, useCallback } from 'react'

// Memoized component to prevent unnecessary re-renders
const DashboardCard = memo(({ data, onUpdate }) => {
  const processedData = useMemo(() => {
    return data.map(item => ({
      ...item,
      computed: expensiveCalculation(item)
    }))
  }, [data])

  const handleUpdate = useCallback((id: string) => {
    onUpdate(id)
  }, [onUpdate])

  return (
    <div className="dashboard-card">
      {processedData.map(item => (
        <div key={item.id} onClick={() => handleUpdate(item.id)}>
          {item.name}: {item.computed}
        </div>
      ))}
    </div>
  )
})"""

DB_POOL_CODE = """\
import { Pool } from 'pg'

const pool = new Pool({
  host: process.env.DB_HOST,
  port: parseInt(process.env.DB_PORT || '5432'),
  database: process.env.DB_NAME,
  user: process.env.DB_USER,
  password: process.env.DB_PASSWORD,
  min: 5,
  max: 20,
  idleTimeoutMillis: 30000,
  connectionTimeoutMillis: 10000,
  keepAlive: true,
})

export const queryWithRetry = async (text: string, params?: any[], retries = 3) => {
  for (let i = 0; i < retries; i++) {
    try {
      const client = await pool.connect()
      try {
        return await client.query(text, params)
      } finally {
        client.release()
      }
    } catch (error) {
      if (i === retries - 1) throw error
      await new Promise(resolve => setTimeout(resolve, 1000 * (i + 1)))
    }
  }
}"""

# Each rule fires when any of its trigger keywords was extracted from the statement
SUGGESTION_RULES = [
    {
        "triggers": {"auth", "jwt", "token", "login"},
        "id": "auth-timeout-fix",
        "title": "Fix JWT Token Timeout Handling",
        "description": "Add proper timeout handling and token refresh logic to prevent authentication failures.",
        "code": AUTH_TIMEOUT_CODE,
        "language": "typescript",
        "file_path": "src/middleware/auth.ts",
        "repository": "main-app",
        "priority": "high",
        "category": "bug_fix",
    },
    {
        "triggers": {"react", "performance", "render"},
        "id": "react-performance-fix",
        "title": "Optimize React Component Re-rendering",
        "description": "Use React.memo and useMemo to prevent unnecessary re-renders and improve performance.",
        "code": REACT_RENDER_CODE,
        "language": "typescript",
        "file_path": "src/components/DashboardCard.tsx",
        "repository": "frontend-app",
        "priority": "high",
        "category": "performance",
    },
    {
        "triggers": {"database", "connection", "pool"},
        "id": "db-connection-fix",
        "title": "Optimize Database Connection Pool",
        "description": "Implement proper connection pooling to handle high traffic and prevent connection exhaustion.",
        "code": DB_POOL_CODE,
        "language": "typescript",
        "file_path": "src/lib/database.ts",
        "repository": "api-service",
        "priority": "high",
        "category": "performance",
    },
]


# =============================================================================
# Lookups
# =============================================================================

def detect_language(file_name: str) -> str:
    """Language name from a file extension, 'text' when unknown."""
    extension = file_name.rsplit(".", 1)[-1].lower()
    return LANGUAGE_MAP.get(extension, "text")


def get_context_buckets(statement: str) -> list[str]:
    """Topic buckets whose keywords occur in the statement."""
    lowered = statement.lower()
    return [
        bucket for bucket, keywords in CONTEXT_BUCKETS.items()
        if any(keyword in lowered for keyword in keywords)
    ]


def contains_term(text: str, term: str) -> bool:
    """Term occurs in text and is not glued to surrounding word characters."""
    return re.search(rf"(?<!\w){re.escape(term)}(?!\w)", text) is not None
